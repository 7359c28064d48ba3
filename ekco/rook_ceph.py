"""Management of the Rook CephCluster: storage nodes, daemon counts and CSI resources."""

import json
import logging
from typing import Any, Mapping, Optional, Protocol, Sequence

import semver

from .ceph_commands import ROOK_CEPH_NS, CephToolbox
from .config import ControllerConfig
from .kube import JSONPatchOperation, NotFoundError, PatchOp, encode_patches, label_selector

CEPH_CLUSTER_NAME = "rook-ceph"
ROOK_V19 = semver.Version.parse("1.9.0")

# mons: one for clusters of 1 or 2 nodes, three otherwise
MAX_MON_COUNT = 3
MIN_MON_COUNT = 1
# mgrs: one for single node clusters, two otherwise
MAX_MGR_COUNT = 2
MIN_MGR_COUNT = 1

OPERATOR_CONFIG_MAP = "rook-ceph-operator-config"

_SIDECAR = ("128Mi", "100m", "256Mi", "200m")
_PLUGIN = ("512Mi", "250m", "1Gi", "500m")
_SMALL = ("128Mi", "50m", "256Mi", "100m")


def _resources(*containers: tuple) -> str:
    return "".join(
        f"- name : {name}\n  resource:\n    requests:\n      memory: {req_mem}\n"
        f"      cpu: {req_cpu}\n    limits:\n      memory: {lim_mem}\n      cpu: {lim_cpu}\n"
        for name, (req_mem, req_cpu, lim_mem, lim_cpu) in containers
    )


_PROVISIONER_SIDECARS = (
    ("csi-provisioner", _SIDECAR),
    ("csi-resizer", _SIDECAR),
    ("csi-attacher", _SIDECAR),
    ("csi-snapshotter", _SIDECAR),
)

CEPH_CSI_RESOURCES = {
    "CSI_RBD_PROVISIONER_RESOURCE": _resources(
        *_PROVISIONER_SIDECARS,
        ("csi-rbdplugin", _PLUGIN),
        ("csi-omap-generator", _PLUGIN),
        ("liveness-prometheus", _SMALL),
    ),
    "CSI_RBD_PLUGIN_RESOURCE": _resources(
        ("driver-registrar", _SMALL),
        ("csi-rbdplugin", _PLUGIN),
        ("liveness-prometheus", _SMALL),
    ),
    "CSI_CEPHFS_PROVISIONER_RESOURCE": _resources(
        *_PROVISIONER_SIDECARS,
        ("csi-cephfsplugin", _PLUGIN),
        ("liveness-prometheus", _SMALL),
    ),
    "CSI_CEPHFS_PLUGIN_RESOURCE": _resources(
        ("driver-registrar", _SMALL),
        ("csi-cephfsplugin", _PLUGIN),
        ("liveness-prometheus", _SMALL),
    ),
    "CSI_NFS_PROVISIONER_RESOURCE": _resources(
        ("csi-provisioner", _SIDECAR),
        ("csi-nfsplugin", _PLUGIN),
    ),
    "CSI_NFS_PLUGIN_RESOURCE": _resources(
        ("driver-registrar", _SMALL),
        ("csi-nfsplugin", _PLUGIN),
    ),
}

_CEPH_CSI_RESOURCES_PATCH = json.dumps({"data": CEPH_CSI_RESOURCES}, separators=(",", ":"))

_ROOK_DAEMON_SELECTORS = (
    "app=rook-ceph-osd",
    "app=rook-ceph-mds",
    "app=rook-ceph-mgr",
    "app=rook-ceph-mon",
)


class _CephClient(Protocol):
    def get(self, kind: str, namespace: str, name: str) -> dict: ...

    def json_patch(self, kind: str, namespace: str, name: str, patch: str) -> dict: ...


def ceph_csi_resources_need_update(data: Optional[Mapping[str, str]]) -> bool:
    """Return whether the operator config map lacks any of the recommended CSI resources."""
    data = data or {}
    return any(data.get(key) != value for key, value in CEPH_CSI_RESOURCES.items())


def _pod_spec(obj: Mapping[str, Any]) -> dict:
    return obj.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})


def _storage(cluster: Mapping[str, Any]) -> Mapping[str, Any]:
    return (cluster.get("spec") or {}).get("storage") or {}


class CephClusterManager:
    """Keeps the rook-ceph CephCluster in step with the Kubernetes cluster."""

    def __init__(self, config: ControllerConfig, toolbox: CephToolbox, log=None):
        self.config = config
        self.toolbox = toolbox
        self.log = log or logging.getLogger(__name__)

    @property
    def _client(self):
        return self.config.client

    @property
    def _ceph(self) -> _CephClient:
        return self.config.ceph_v1

    def get_ceph_cluster(self) -> dict:
        """Fetch the rook-ceph CephCluster; raises NotFoundError if it does not exist."""
        return self._ceph.get("CephCluster", ROOK_CEPH_NS, CEPH_CLUSTER_NAME)

    def json_patch_ceph_cluster(self, patches: Sequence[JSONPatchOperation]) -> dict:
        """Apply JSON patch operations to the rook-ceph CephCluster."""
        patch = encode_patches(patches)
        self.log.debug("Patching CephCluster %s with %s", CEPH_CLUSTER_NAME, patch)
        return self._ceph.json_patch("CephCluster", ROOK_CEPH_NS, CEPH_CLUSTER_NAME, patch)

    def use_nodes_for_storage(
        self,
        rook_version: semver.Version,
        cluster: Mapping[str, Any],
        names: Sequence[str],
        manage_nodes: bool,
    ) -> int:
        """Add the named nodes to the storage list and return the number of hosts with OSDs.

        The count may exceed ``len(names)`` when a node is not ready but not yet purged.
        When ``manage_nodes`` is set the user owns the node list and it is left alone.
        """
        if not manage_nodes:
            nodes = list(_storage(cluster).get("nodes") or [])
            known = {node.get("name") for node in nodes}
            changed = False
            for name in names:
                if name not in known:
                    self.log.info("Adding node %r to CephCluster node storage list", name)
                    nodes.append({"name": name})
                    known.add(name)
                    changed = True
            if changed:
                self.json_patch_ceph_cluster(
                    [
                        JSONPatchOperation(PatchOp.REPLACE, "/spec/storage/nodes", nodes),
                        JSONPatchOperation(PatchOp.REPLACE, "/spec/storage/useAllNodes", False),
                    ]
                )
        else:
            self.log.debug("EKCO is not managing CephCluster storage nodes")
        return self.toolbox.count_unique_hosts_with_osd(rook_version)

    def remove_storage_node(self, name: str) -> None:
        """Remove a node from the CephCluster storage node list, if present."""
        cluster = self.get_ceph_cluster()
        nodes = list(_storage(cluster).get("nodes") or [])
        remaining = [node for node in nodes if node.get("name") != name]
        if len(remaining) == len(nodes):
            return
        self.log.info("Removing node %r from CephCluster storage list", name)
        self.json_patch_ceph_cluster(
            [JSONPatchOperation(PatchOp.REPLACE, "/spec/storage/nodes", remaining)]
        )
        self.log.info("Purge node %r: removed from CephCluster node storage list", name)

    def delete_osd_deployment(self, name: str) -> Optional[str]:
        """Delete the OSD deployment scheduled on the node; return its OSD id if one was found."""
        selector = label_selector({"app": "rook-ceph-osd"})
        for deploy in self._client.list_deployments(ROOK_CEPH_NS, selector):
            node_selector = _pod_spec(deploy).get("nodeSelector") or {}
            if node_selector.get("kubernetes.io/hostname") != name:
                continue
            metadata = deploy.get("metadata") or {}
            osd_id = (metadata.get("labels") or {}).get("ceph-osd-id")
            self._client.delete_deployment(ROOK_CEPH_NS, metadata["name"])
            self.log.info("Deleted OSD Deployment for node %s", name)
            return osd_id
        return None

    def reconcile_mon_count(self, node_count: int) -> None:
        """Raise the mon count to 3 once there are 3 nodes; never lower it."""
        desired = MAX_MON_COUNT if node_count >= MAX_MON_COUNT else MIN_MON_COUNT
        cluster = self.get_ceph_cluster()
        current = ((cluster.get("spec") or {}).get("mon") or {}).get("count", 0)
        if current == desired:
            return
        if current > desired:
            self.log.debug("Will not reduce mon count from %d to %d", current, desired)
            return
        self.log.info("Increasing mon count from %d to %d", current, desired)
        self.json_patch_ceph_cluster(
            [JSONPatchOperation(PatchOp.REPLACE, "/spec/mon/count", desired)]
        )

    def reconcile_mgr_count(self, rook_version: semver.Version, node_count: int) -> None:
        """Raise the mgr count to 2 once there are 2 nodes (Rook 1.9+); never lower it."""
        if rook_version < ROOK_V19:
            return
        desired = MAX_MGR_COUNT if node_count >= MAX_MGR_COUNT else MIN_MGR_COUNT
        cluster = self.get_ceph_cluster()
        current = ((cluster.get("spec") or {}).get("mgr") or {}).get("count", 0)
        if current == desired:
            return
        if current > desired:
            self.log.debug("Will not reduce mgr count from %d to %d", current, desired)
            return
        self.log.info("Increasing mgr count from %d to %d", current, desired)
        self.json_patch_ceph_cluster(
            [JSONPatchOperation(PatchOp.REPLACE, "/spec/mgr/count", desired)]
        )

    def set_ceph_csi_resources(self, rook_version: semver.Version, node_count: int) -> bool:
        """Set recommended CSI resources once the cluster has 3 nodes; return whether it changed."""
        if rook_version < ROOK_V19 or node_count < 3:
            return False
        config_map = self._client.get_config_map(ROOK_CEPH_NS, OPERATOR_CONFIG_MAP)
        if not ceph_csi_resources_need_update(config_map.get("data")):
            return False
        self.log.info("Setting Ceph CSI plugin and provisioner resources")
        self._client.merge_patch_config_map(
            ROOK_CEPH_NS, OPERATOR_CONFIG_MAP, _CEPH_CSI_RESOURCES_PATCH
        )
        return True

    def prioritize_rook(self) -> None:
        """Give the Rook agent and daemon deployments the configured priority class."""
        self._prioritize_agent()
        for selector in _ROOK_DAEMON_SELECTORS:
            self.log.debug("Setting priority class for rook-ceph deployments with label %s", selector)
            self._prioritize_deployments(ROOK_CEPH_NS, selector)

    def _prioritize_agent(self) -> None:
        try:
            agent = self._client.get_daemon_set(ROOK_CEPH_NS, "rook-ceph-agent")
        except NotFoundError:
            self.log.debug("rook-ceph-agent daemonset not found")
            return
        spec = _pod_spec(agent)
        if spec.get("priorityClassName"):
            self.log.debug("rook-ceph-agent daemonset has priority class %s", spec["priorityClassName"])
            return
        priority_class = self.config.rook_priority_class
        self.log.info("Setting rook-ceph-agent priorityclass %s", priority_class)
        spec["priorityClassName"] = priority_class
        self._client.update_daemon_set(ROOK_CEPH_NS, agent)

    def _prioritize_deployments(self, namespace: str, selector: str) -> None:
        priority_class = self.config.rook_priority_class
        for deployment in self._client.list_deployments(namespace, selector):
            name = deployment["metadata"]["name"]
            spec = _pod_spec(deployment)
            if spec.get("priorityClassName"):
                self.log.debug("Deployment %s has priority class %s", name, spec["priorityClassName"])
                continue
            spec["priorityClassName"] = priority_class
            self.log.info("Setting %s priority class %s", name, priority_class)
            self._client.update_deployment(namespace, deployment)
            # at most one deployment per reconcile to avoid disruption
            break

    def get_rook_version(self) -> semver.Version:
        """Read the Rook version from the rook-ceph-operator deployment's image tag."""
        try:
            self._client.get_namespace(ROOK_CEPH_NS)
        except NotFoundError as err:
            raise NotFoundError(f"get rook-ceph namespace: {err}") from err
        try:
            deploy = self._client.get_deployment(ROOK_CEPH_NS, "rook-ceph-operator")
        except NotFoundError as err:
            raise NotFoundError(f"get rook-ceph-operator deployment: {err}") from err
        containers = _pod_spec(deploy).get("containers") or []
        if not any(c.get("name") == "rook-ceph-operator" for c in containers):
            raise LookupError("rook-ceph-operator container not found in deployment")
        tag = containers[0].get("image", "").split(":")[-1]
        version = tag[1:] if tag.startswith("v") else tag
        try:
            return semver.Version.parse(version)
        except ValueError as err:
            raise ValueError(f"parse semver: {err}") from err