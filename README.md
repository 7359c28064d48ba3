# ekco

`ekco` holds the reconcile logic of an operator for an embedded Kubernetes
cluster with Rook-Ceph storage. Given the cluster's nodes, one pass:

- purges nodes that have been unreachable for longer than the configured
  toleration (respecting minimum counts of ready masters and workers), and
  clears dead nodes;
- adds ready nodes to the CephCluster storage node list and raises the mon
  count (to 3) and, from Rook 1.9, the mgr count (to 2) as nodes are added,
  never lowering them;
- raises the replication of the Ceph block pool, shared filesystem and object
  store to the node count, kept between the configured minimum and maximum;
- sets recommended Ceph CSI resources once the cluster reaches three nodes
  (Rook 1.9 and later);
- gives Rook deployments and the Rook agent a priority class;
- scales Prometheus to at most 2 and Alertmanager to at most 3 replicas;
- approves pending kubelet serving certificate signing requests.

Kubernetes objects are handled as plain dicts in their API shape
(`metadata`, `spec`, `status`, ...).

## Configuration

`ekco.config.Config` is a dataclass of the operator's settings. Build one from
a mapping such as a parsed configuration file; keys are the snake_case option
names and unknown keys are ignored:

```python
from ekco.config import Config

config = Config.from_mapping({
    "node_unreachable_toleration": "1h",
    "purge_dead_nodes": True,
    "min_ready_master_nodes": 2,
    "min_ready_worker_nodes": 0,
    "maintain_rook_storage_nodes": True,
    "ceph_block_pool": "replicapool",
    "ceph_filesystem": "rook-shared-fs",
    "ceph_object_store": "rook-ceph-store",
    "min_ceph_pool_replication": 1,
    "max_ceph_pool_replication": 3,
    "auto_approve_kubelet_csrs": True,
})
```

Durations accept a `timedelta` or a string such as `"1h30m"` or `"500ms"`;
booleans and integers also accept their string forms. A value of the wrong
kind raises `TypeError` or `ValueError`.

`ekco.config.ControllerConfig` carries the clients and settings used by the
cluster-side classes: `client` (a Kubernetes client), `ceph_v1` (a Ceph
resource client), `rook_priority_class` and others.

## Clients you supply

The package talks to Kubernetes only through objects you pass in:

- `ekco.kube.KubeClient` — the protocol for `ControllerConfig.client`:
  `get_namespace`, `list_pods`, `list_deployments`, `get_deployment`,
  `update_deployment`, `delete_deployment`, `get_daemon_set`,
  `update_daemon_set`, `get_config_map`, `merge_patch_config_map`.
- `ControllerConfig.ceph_v1` — an object with `get(kind, namespace, name)` and
  `json_patch(kind, namespace, name, patch)` for CephCluster, CephBlockPool,
  CephFilesystem and CephObjectStore resources.
- `ekco.kube.SyncExecutor` — `exec_container(namespace, pod, container, *command)`
  returning `(exit_code, stdout, stderr)`.

Missing objects are reported by raising `ekco.kube.NotFoundError`;
`ekco.kube.is_not_found(error)` also follows chained causes.

## Running the operator

```python
from ekco.ceph_commands import CephToolbox
from ekco.operator import Operator
from ekco.pools import PoolReplicator
from ekco.rook_ceph import CephClusterManager

toolbox = CephToolbox(kube_client, executor)
cluster = CephClusterManager(controller_config, toolbox)
pools = PoolReplicator(controller_config, toolbox)

operator = Operator(config, operator_client, cluster, pools, scaler, ceph_version_of)
operator.reconcile(nodes, full_reconcile=True)
```

`Operator` takes:

- `client` with `list_nodes()`, `list_certificate_signing_requests()` and
  `update_certificate_signing_request_approval(name, csr)`;
- `cluster`, normally a `CephClusterManager`; when `purge_dead_nodes` or
  `clear_dead_nodes` is set it must also provide
  `purge_node(name, maintain_rook_storage_nodes, rook_version)` and
  `clear_node(name)`, which `CephClusterManager` does not;
- `pools`, normally a `PoolReplicator`;
- `scaler` with `scale_prometheus(replicas)` and `scale_alert_manager(replicas)`;
- `ceph_version_of`, a callable returning the `semver.Version` of Ceph running
  in a CephCluster dict.

`reconcile` runs every step and raises one `ReconcileError` whose `errors`
attribute lists each step that failed. `poll(interval, timeout, stop_event)`
lists the nodes and reconciles every `interval` (seconds or `timedelta`) until
`stop_event` is set, giving each pass up to `timeout`; the first successful
pass and every 60th after it is a full reconcile. Failures are logged, not
raised.

Helpers in `ekco.operator`: `node_is_ready`, `node_is_master`,
`node_ready_counts` and `should_use_node_for_storage`.

## Pausing parts of the reconcile

`ekco.overrides` holds process-wide switches:

```python
from ekco import overrides

overrides.pause_prometheus()
assert overrides.prometheus_paused()
overrides.resume_prometheus()
```

The operator honours the Prometheus switch. The MinIO and kotsadm switches
(`pause_minio`, `pause_kotsadm` and friends) are kept for other tooling; the
operator here does not manage MinIO or kotsadm.

## Ceph helpers

`ekco.ceph_commands.CephToolbox` runs `ceph` commands in the Rook toolbox pod
(the operator pod before Rook 1.4): `exec`, `purge_osd`, `filesystem_ok`,
`wait_filesystem`, `count_unique_hosts_with_osd`, `pool_set_size`,
`pool_set_min_size` and `pool_set_pg_num_min`. A command that exits with
status 2 raises `CephNotFoundError`; any other failure raises
`CephCommandError`.

```python
from ekco.ceph_commands import object_store_pool_name, parse_ceph_osd_status_hosts

object_store_pool_name("my-store", "rgw.meta")   # "my-store.rgw.meta"
object_store_pool_name("my-store", ".rgw.root")  # ".rgw.root"

hosts = parse_ceph_osd_status_hosts(osd_status_output)  # sorted, distinct
```

## What this package does not do

- It has no command and no daemon entry point; you build an `Operator` and call
  `reconcile` or `poll` yourself.
- It ships no Kubernetes or Ceph API client; the clients above must be supplied.
- It does not purge or clear nodes by itself: it calls the `purge_node` and
  `clear_node` you supply.
- It does not rotate certificates, run an internal load balancer, restart
  failed Envoy pods, manage HA MinIO or kotsadm, or create a CephCluster.