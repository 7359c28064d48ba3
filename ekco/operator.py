"""The cluster operator: reconciles nodes, Rook storage, Prometheus scale and kubelet CSRs."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as _FutureTimeout
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence, Tuple, Union

import semver

from . import overrides
from .config import Config
from .kube import is_not_found

UNREACHABLE_TAINT = "node.kubernetes.io/unreachable"
NOT_READY_TAINT = "node.kubernetes.io/not-ready"
MASTER_LABELS = ("node-role.kubernetes.io/master", "node-role.kubernetes.io/control-plane")
KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"

# every this many successful polls the reconcile is a full one
FULL_RECONCILE_EVERY = 60

MAX_PROMETHEUS_REPLICAS = 2
MAX_ALERT_MANAGER_REPLICAS = 3


class ReconcileError(Exception):
    """One or more reconcile steps failed; ``errors`` holds each failure."""

    def __init__(self, errors: Iterable[BaseException]):
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors))


class _OperatorClient(Protocol):
    def list_nodes(self) -> list: ...

    def list_certificate_signing_requests(self) -> list: ...

    def update_certificate_signing_request_approval(self, name: str, csr: dict) -> dict: ...


class _Scaler(Protocol):
    def scale_prometheus(self, replicas: int) -> None: ...

    def scale_alert_manager(self, replicas: int) -> None: ...


def _wrap(message: str, error: BaseException) -> Exception:
    wrapped = RuntimeError(f"{message}: {error}")
    wrapped.__cause__ = error
    return wrapped


def _metadata(node: Mapping[str, Any]) -> Mapping[str, Any]:
    return node.get("metadata") or {}


def _name(node: Mapping[str, Any]) -> str:
    return _metadata(node).get("name", "")


def _labels(node: Mapping[str, Any]) -> Mapping[str, str]:
    return _metadata(node).get("labels") or {}


def _taints(node: Mapping[str, Any]) -> list:
    return (node.get("spec") or {}).get("taints") or []


def _as_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _seconds(value: Union[float, int, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def node_is_ready(node: Mapping[str, Any]) -> bool:
    """A node is ready unless it carries the not-ready or unreachable taint."""
    return not any(
        taint.get("key") in (NOT_READY_TAINT, UNREACHABLE_TAINT) for taint in _taints(node)
    )


def node_is_master(node: Mapping[str, Any]) -> bool:
    """Return whether the node has a master or control-plane role label."""
    labels = _labels(node)
    return any(label in labels for label in MASTER_LABELS)


def node_ready_counts(nodes: Iterable[Mapping[str, Any]]) -> Tuple[int, int]:
    """Return the numbers of ready masters and ready workers."""
    masters = workers = 0
    for node in nodes:
        if not node_is_ready(node):
            continue
        if node_is_master(node):
            masters += 1
        else:
            workers += 1
    return masters, workers


def should_use_node_for_storage(
    node: Mapping[str, Any],
    cluster: Optional[Mapping[str, Any]],
    rook_storage_nodes_label: str,
    manage_nodes: bool,
) -> bool:
    """Decide whether a node belongs in the CephCluster storage node list."""
    if not node_is_ready(node):
        return False
    if manage_nodes:
        # the CephCluster's own node list is the source of truth
        storage = ((cluster or {}).get("spec") or {}).get("storage") or {}
        return any(rook_node.get("name") == _name(node) for rook_node in storage.get("nodes") or [])
    if not rook_storage_nodes_label:
        return True
    return any(
        f"{key}={value}" == rook_storage_nodes_label for key, value in _labels(node).items()
    )


class Operator:
    """Automates the upkeep a cluster administrator would otherwise do by hand."""

    def __init__(
        self,
        config: Config,
        client: _OperatorClient,
        cluster,
        pools,
        scaler: _Scaler,
        ceph_version_of: Callable[[Mapping[str, Any]], semver.Version],
        log=None,
    ):
        self.config = config
        self.client = client
        self.cluster = cluster
        self.pools = pools
        self.scaler = scaler
        self.ceph_version_of = ceph_version_of
        self.log = log or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def is_dead(self, node: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
        """A node is dead once it has been unreachable for longer than the toleration."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        for taint in _taints(node):
            if taint.get("key") != UNREACHABLE_TAINT:
                continue
            added = _as_datetime(taint.get("timeAdded"))
            if added is not None:
                return added < now - self.config.node_unreachable_toleration
        return False

    def reconcile(self, nodes: Sequence[Mapping[str, Any]], full_reconcile: bool) -> None:
        """Run every reconcile step; raise ReconcileError listing the steps that failed."""
        with self._lock:
            if full_reconcile:
                self.log.debug("Performing full reconcile")
            errors = []

            rook_version = None
            try:
                rook_version = self.cluster.get_rook_version()
            except Exception as err:
                if not is_not_found(err):
                    self.log.error("Failed to get Rook version: %s", err)
            else:
                self.log.debug("Rook version %s", rook_version)

            ready_masters, ready_workers = node_ready_counts(nodes)
            for node in nodes:
                try:
                    self._reconcile_node(node, ready_masters, ready_workers, rook_version)
                except Exception as err:
                    errors.append(_wrap(f"reconcile node {_name(node)}", err))

            if rook_version is not None:
                try:
                    self.reconcile_rook(rook_version, nodes, full_reconcile)
                except ReconcileError as err:
                    errors.extend(err.errors)
                except Exception as err:
                    errors.append(err)

            try:
                self.reconcile_prometheus(len(nodes))
            except Exception as err:
                errors.append(_wrap("failed to reconcile prometheus", err))

            if self.config.auto_approve_kubelet_cert_signing_requests:
                try:
                    self.reconcile_certificate_signing_requests()
                except Exception as err:
                    errors.append(_wrap("reconcile csrs", err))

            if errors:
                raise ReconcileError(errors)

    def _reconcile_node(self, node, ready_masters: int, ready_workers: int, rook_version) -> None:
        name = _name(node)
        if self.config.purge_dead_nodes and self.is_dead(node):
            if node_is_master(node) and ready_masters < self.config.min_ready_master_nodes:
                self.log.debug("Skipping auto-purge master: %d ready masters", ready_masters)
                return
            if ready_workers < self.config.min_ready_worker_nodes:
                self.log.debug("Skipping auto-purge worker: %d ready workers", ready_workers)
                return
            self.log.info("Automatically purging dead node %s", name)
            try:
                self.cluster.purge_node(name, self.config.maintain_rook_storage_nodes, rook_version)
            except Exception as err:
                raise _wrap(f"purge dead node {name}", err) from err

        if self.config.clear_dead_nodes and self.is_dead(node):
            try:
                self.cluster.clear_node(name)
            except Exception as err:
                raise _wrap(f"clear dead node {name}", err) from err

    def reconcile_rook(
        self, rook_version: semver.Version, nodes: Sequence[Mapping[str, Any]], full_reconcile: bool
    ) -> None:
        """Keep storage nodes, pool replication, daemon counts and priorities in step."""
        try:
            self.cluster.get_ceph_cluster()
        except Exception as err:
            if is_not_found(err):
                return  # no CephCluster, nothing to do
            raise _wrap("get CephCluster", err) from err

        errors = []
        if self.config.maintain_rook_storage_nodes:
            # only whether the list is set matters: then Rook's own list is followed
            manage_nodes = bool(self.config.rook_storage_nodes)
            try:
                ready_count = self.ensure_all_used_for_storage(rook_version, nodes, manage_nodes)
            except Exception as err:
                if not is_not_found(err):
                    errors.append(_wrap("ensure all ready nodes used for storage", err))
            else:
                try:
                    self.adjust_pool_replication_levels(rook_version, ready_count, full_reconcile)
                except Exception as err:
                    errors.append(_wrap("adjust pool replication levels", err))
                try:
                    self.cluster.reconcile_mon_count(ready_count)
                except Exception as err:
                    errors.append(_wrap("reconcile mon count", err))
                try:
                    self.cluster.reconcile_mgr_count(rook_version, ready_count)
                except Exception as err:
                    errors.append(_wrap("reconcile mgr count", err))

        if self.config.reconcile_ceph_csi_resources:
            try:
                self.cluster.set_ceph_csi_resources(rook_version, len(nodes))
            except Exception as err:
                errors.append(_wrap("set ceph csi resources", err))

        if self.config.rook_priority_class:
            try:
                self.cluster.prioritize_rook()
            except Exception as err:
                errors.append(_wrap("set rook priority class", err))

        if errors:
            raise ReconcileError(errors)

    def ensure_all_used_for_storage(
        self, rook_version: semver.Version, nodes: Sequence[Mapping[str, Any]], manage_nodes: bool
    ) -> int:
        """Add ready nodes to the storage list (never removes) and return the OSD host count."""
        cluster = self.cluster.get_ceph_cluster()
        names = [
            _name(node)
            for node in nodes
            if should_use_node_for_storage(
                node, cluster, self.config.rook_storage_nodes_label, manage_nodes
            )
        ]
        return self.cluster.use_nodes_for_storage(rook_version, cluster, names, manage_nodes)

    def adjust_pool_replication_levels(
        self, rook_version: semver.Version, num_nodes: int, full_reconcile: bool
    ) -> None:
        """Scale Ceph pool replication with the node count, within the configured bounds."""
        factor = max(num_nodes, self.config.min_ceph_pool_replication)
        factor = min(factor, self.config.max_ceph_pool_replication)
        errors = []

        ceph_version = None
        try:
            ceph_cluster = self.cluster.get_ceph_cluster()
        except Exception as err:
            errors.append(_wrap("get CephCluster config", err))
        else:
            try:
                ceph_version = self.ceph_version_of(ceph_cluster)
            except Exception as err:
                errors.append(_wrap("get ceph version", err))

        block_pool = self.config.ceph_block_pool
        did_update = False
        try:
            did_update = self.pools.set_block_pool_replication(
                rook_version, ceph_version, block_pool, factor, full_reconcile
            )
        except Exception as err:
            errors.append(_wrap(f"set pool {block_pool} replication to {factor}", err))

        filesystem = self.config.ceph_filesystem
        try:
            did_update = self.pools.set_filesystem_replication(
                rook_version, ceph_version, filesystem, factor, full_reconcile
            ) or did_update
        except Exception as err:
            errors.append(_wrap(f"set filesystem {filesystem} replication to {factor}", err))

        object_store = self.config.ceph_object_store
        try:
            did_update = self.pools.set_object_store_replication(
                rook_version, ceph_version, object_store, factor, full_reconcile
            ) or did_update
        except Exception as err:
            errors.append(_wrap(f"set object store {object_store} replication to {factor}", err))

        # No resource records the health metrics level; follow the other pools' updates.
        try:
            self.pools.set_device_health_metrics_replication(
                rook_version, ceph_version, factor, full_reconcile or did_update
            )
        except Exception as err:
            errors.append(_wrap(f"set device_health_metrics replication to {factor}", err))

        if errors:
            raise ReconcileError(errors)

    def reconcile_prometheus(self, node_count: int) -> None:
        """Scale Prometheus to at most 2 and Alertmanager to at most 3 replicas."""
        if overrides.prometheus_paused():
            self.log.debug("Not updating Prometheus scale as that has been paused")
            return
        prometheus_replicas = min(MAX_PROMETHEUS_REPLICAS, node_count)
        self.log.debug("Ensuring k8s prometheus replicas are set to %d", prometheus_replicas)
        try:
            self.scaler.scale_prometheus(prometheus_replicas)
        except Exception as err:
            raise _wrap("failed to scale prometheus operator", err) from err
        alert_manager_replicas = min(MAX_ALERT_MANAGER_REPLICAS, node_count)
        self.log.debug(
            "Ensuring prometheus alert manager replicas are set to %d", alert_manager_replicas
        )
        try:
            self.scaler.scale_alert_manager(alert_manager_replicas)
        except Exception as err:
            raise _wrap("failed to scale alert manager operator", err) from err

    def reconcile_certificate_signing_requests(self) -> None:
        """Approve pending kubelet serving certificate signing requests."""
        try:
            csrs = self.client.list_certificate_signing_requests()
        except Exception as err:
            raise _wrap("list csrs", err) from err
        for csr in csrs:
            spec = csr.get("spec") or {}
            if spec.get("signerName") != KUBELET_SERVING_SIGNER:
                continue
            status = csr.setdefault("status", {})
            if status.get("conditions") or status.get("certificate"):
                continue
            status["conditions"] = [
                {
                    "type": "Approved",
                    "reason": "ekcoApprove",
                    "message": "automated ekco approval of kubelet csr request",
                    "status": "True",
                }
            ]
            name = _name(csr)
            try:
                self.client.update_certificate_signing_request_approval(name, csr)
            except Exception as err:
                raise _wrap(f"approve csr {name}", err) from err
            self.log.info("CSR approval is successful %s", name)

    def poll(
        self,
        interval: Union[float, timedelta],
        timeout: Union[float, timedelta],
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Reconcile every ``interval`` until ``stop_event`` is set.

        Each reconcile may run for ``timeout``; every 60th successful one is full.
        """
        stop_event = stop_event or threading.Event()
        wait = _seconds(interval)
        limit = _seconds(timeout)
        count = 0
        with ThreadPoolExecutor(max_workers=1) as executor:
            while not stop_event.wait(wait):
                try:
                    nodes = self.client.list_nodes()
                except Exception as err:
                    self.log.info("Skipping reconcile: failed to list nodes: %s", err)
                    continue
                full_reconcile = count % FULL_RECONCILE_EVERY == 0
                future = executor.submit(self.reconcile, nodes, full_reconcile)
                try:
                    future.result(timeout=limit)
                except _FutureTimeout:
                    self.log.info("Reconcile failed: timed out after %s seconds", limit)
                    continue
                except Exception as err:
                    self.log.info("Reconcile failed: %s", err)
                    continue
                count += 1