import threading
from datetime import datetime, timedelta, timezone

import pytest
import semver

from ekco import overrides
from ekco.config import Config
from ekco.kube import NotFoundError
from ekco.operator import (
    NOT_READY_TAINT,
    UNREACHABLE_TAINT,
    Operator,
    ReconcileError,
    node_is_master,
    node_is_ready,
    node_ready_counts,
    should_use_node_for_storage,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
ROOK = semver.Version.parse("1.9.12")


def make_node(name="", labels=None, taints=None):
    return {"metadata": {"name": name, "labels": labels or {}}, "spec": {"taints": taints or []}}


class FakeClient:
    def __init__(self, nodes=None, csrs=None, fail_first_list=False):
        self.nodes = nodes or []
        self.csrs = csrs or []
        self.fail_first_list = fail_first_list
        self.list_calls = 0
        self.approved = []

    def list_nodes(self):
        self.list_calls += 1
        if self.fail_first_list and self.list_calls == 1:
            raise RuntimeError("api down")
        return self.nodes

    def list_certificate_signing_requests(self):
        return self.csrs

    def update_certificate_signing_request_approval(self, name, csr):
        self.approved.append((name, csr))
        return csr


class FakeCluster:
    def __init__(self, rook_version=ROOK, ceph_cluster=None, osd_hosts=1):
        self.rook_version = rook_version
        self.ceph_cluster = ceph_cluster
        self.osd_hosts = osd_hosts
        self.calls = []
        self.purge_error = None

    def get_rook_version(self):
        if self.rook_version is None:
            raise NotFoundError("no rook")
        return self.rook_version

    def get_ceph_cluster(self):
        self.calls.append(("get_ceph_cluster",))
        if self.ceph_cluster is None:
            raise NotFoundError("no cluster")
        return self.ceph_cluster

    def use_nodes_for_storage(self, rook_version, cluster, names, manage_nodes):
        self.calls.append(("use_nodes", list(names), manage_nodes))
        return self.osd_hosts

    def reconcile_mon_count(self, count):
        self.calls.append(("mon", count))

    def reconcile_mgr_count(self, rook_version, count):
        self.calls.append(("mgr", count))

    def set_ceph_csi_resources(self, rook_version, count):
        self.calls.append(("csi", count))
        return True

    def prioritize_rook(self):
        self.calls.append(("prioritize",))

    def purge_node(self, name, maintain, rook_version):
        if self.purge_error:
            raise self.purge_error
        self.calls.append(("purge", name, maintain))

    def clear_node(self, name):
        self.calls.append(("clear", name))


class FakePools:
    def __init__(self):
        self.calls = []

    def set_block_pool_replication(self, rook_version, ceph_version, name, level, full):
        self.calls.append(("block", ceph_version, name, level, full))
        return False

    def set_filesystem_replication(self, rook_version, ceph_version, name, level, full):
        self.calls.append(("fs", ceph_version, name, level, full))
        return True

    def set_object_store_replication(self, rook_version, ceph_version, name, level, full):
        self.calls.append(("os", ceph_version, name, level, full))
        return False

    def set_device_health_metrics_replication(self, rook_version, ceph_version, level, full):
        self.calls.append(("health", ceph_version, level, full))
        return full


class FakeScaler:
    def __init__(self, stop_after=None, stop_event=None):
        self.prometheus = []
        self.alert_manager = []
        self.stop_after = stop_after
        self.stop_event = stop_event

    def scale_prometheus(self, replicas):
        self.prometheus.append(replicas)
        if self.stop_after and len(self.prometheus) >= self.stop_after:
            self.stop_event.set()

    def scale_alert_manager(self, replicas):
        self.alert_manager.append(replicas)


def make_operator(config=None, client=None, cluster=None, pools=None, scaler=None, ceph_version_of=None):
    return Operator(
        config or Config(),
        client or FakeClient(),
        cluster or FakeCluster(),
        pools or FakePools(),
        scaler or FakeScaler(),
        ceph_version_of or (lambda c: semver.Version.parse("16.2.6")),
    )


@pytest.mark.parametrize(
    "toleration, taints, answer",
    [
        (timedelta(minutes=1), [{"key": UNREACHABLE_TAINT, "timeAdded": NOW - timedelta(hours=1)}], True),
        (timedelta(hours=1), [{"key": UNREACHABLE_TAINT, "timeAdded": NOW - timedelta(minutes=1)}], False),
        (timedelta(minutes=1), [], False),
        (timedelta(minutes=1), [{"key": "kubernetes.io/hostname", "timeAdded": NOW - timedelta(hours=1)}], False),
        (timedelta(minutes=1), [{"key": UNREACHABLE_TAINT}], False),
        (timedelta(minutes=1), [{"key": UNREACHABLE_TAINT, "timeAdded": "2024-01-01T10:00:00Z"}], True),
    ],
)
def test_is_dead(toleration, taints, answer):
    operator = make_operator(Config(node_unreachable_toleration=toleration))
    assert operator.is_dead(make_node(taints=taints), NOW) is answer


ROOK_LABEL = {"node-role.kubernetes.io/rook": "true"}
NOT_READY = [{"key": NOT_READY_TAINT}]
CLUSTER_NODE1 = {"spec": {"storage": {"nodes": [{"name": "node1"}]}}}


@pytest.mark.parametrize(
    "node, cluster, label, manage, want",
    [
        (make_node(), None, "", False, True),
        (make_node(taints=NOT_READY), None, "", False, False),
        (make_node(labels=ROOK_LABEL), None, "node-role.kubernetes.io/rook=true", False, True),
        (make_node(labels=ROOK_LABEL, taints=NOT_READY), None, "node-role.kubernetes.io/rook=true", False, False),
        (make_node(), None, "node-role.kubernetes.io/rook=true", False, False),
        (make_node("node1"), CLUSTER_NODE1, "", True, True),
        (make_node("node2"), CLUSTER_NODE1, "", True, False),
    ],
)
def test_should_use_node_for_storage(node, cluster, label, manage, want):
    assert should_use_node_for_storage(node, cluster, label, manage) is want


def test_node_roles_and_ready_counts():
    master = make_node("m", labels={"node-role.kubernetes.io/control-plane": ""})
    worker = make_node("w")
    down = make_node("d", taints=[{"key": UNREACHABLE_TAINT}])
    assert node_is_master(master) is True
    assert node_is_master(worker) is False
    assert node_is_ready(down) is False
    assert node_ready_counts([master, worker, down, make_node("w2")]) == (1, 2)


def test_reconcile_prometheus_caps_replicas():
    scaler = FakeScaler()
    operator = make_operator(scaler=scaler)
    operator.reconcile_prometheus(5)
    operator.reconcile_prometheus(1)
    assert scaler.prometheus == [2, 1]
    assert scaler.alert_manager == [3, 1]


def test_reconcile_prometheus_paused():
    scaler = FakeScaler()
    operator = make_operator(scaler=scaler)
    overrides.pause_prometheus()
    try:
        operator.reconcile_prometheus(3)
    finally:
        overrides.resume_prometheus()
    assert scaler.prometheus == []
    assert scaler.alert_manager == []


def test_reconcile_certificate_signing_requests():
    pending = {"metadata": {"name": "pending"}, "spec": {"signerName": "kubernetes.io/kubelet-serving"}}
    issued = {
        "metadata": {"name": "issued"},
        "spec": {"signerName": "kubernetes.io/kubelet-serving"},
        "status": {"certificate": "Y2VydA=="},
    }
    other = {"metadata": {"name": "other"}, "spec": {"signerName": "kubernetes.io/kube-apiserver-client"}}
    client = FakeClient(csrs=[pending, issued, other])
    make_operator(client=client).reconcile_certificate_signing_requests()
    assert [name for name, _ in client.approved] == ["pending"]
    condition = client.approved[0][1]["status"]["conditions"][0]
    assert condition["type"] == "Approved"
    assert condition["reason"] == "ekcoApprove"
    assert condition["status"] == "True"


def test_adjust_pool_replication_levels_clamps_factor():
    pools = FakePools()
    cluster = FakeCluster(ceph_cluster={"spec": {}})
    config = Config(
        min_ceph_pool_replication=1,
        max_ceph_pool_replication=3,
        ceph_block_pool="replicapool",
        ceph_filesystem="myfs",
        ceph_object_store="my-store",
    )
    make_operator(config, cluster=cluster, pools=pools).adjust_pool_replication_levels(ROOK, 5, False)
    pacific = semver.Version.parse("16.2.6")
    assert pools.calls == [
        ("block", pacific, "replicapool", 3, False),
        ("fs", pacific, "myfs", 3, False),
        ("os", pacific, "my-store", 3, False),
        ("health", pacific, 3, True),
    ]


def test_adjust_pool_replication_levels_collects_version_error():
    pools = FakePools()
    cluster = FakeCluster(ceph_cluster={"spec": {}})

    def bad_version(_cluster):
        raise ValueError("no image")

    operator = make_operator(
        Config(min_ceph_pool_replication=1, max_ceph_pool_replication=3),
        cluster=cluster,
        pools=pools,
        ceph_version_of=bad_version,
    )
    with pytest.raises(ReconcileError, match="get ceph version"):
        operator.adjust_pool_replication_levels(ROOK, 0, False)
    assert pools.calls[0] == ("block", None, "", 1, False)


def test_reconcile_rook_maintains_storage_nodes():
    cluster = FakeCluster(ceph_cluster={"spec": {"storage": {}}}, osd_hosts=2)
    pools = FakePools()
    config = Config(
        maintain_rook_storage_nodes=True,
        min_ceph_pool_replication=1,
        max_ceph_pool_replication=3,
        reconcile_ceph_csi_resources=True,
        rook_priority_class="node-critical",
    )
    nodes = [make_node("node1"), make_node("node2"), make_node("node3", taints=NOT_READY)]
    make_operator(config, cluster=cluster, pools=pools).reconcile_rook(ROOK, nodes, True)
    calls = [call for call in cluster.calls if call[0] != "get_ceph_cluster"]
    assert calls == [
        ("use_nodes", ["node1", "node2"], False),
        ("mon", 2),
        ("mgr", 2),
        ("csi", 3),
        ("prioritize",),
    ]
    assert pools.calls[0][3] == 2


def test_reconcile_rook_without_ceph_cluster_does_nothing():
    cluster = FakeCluster(ceph_cluster=None)
    make_operator(Config(maintain_rook_storage_nodes=True, rook_priority_class="x"), cluster=cluster).reconcile_rook(
        ROOK, [make_node("n1")], False
    )
    assert cluster.calls == [("get_ceph_cluster",)]


def test_reconcile_skips_rook_when_not_installed():
    cluster = FakeCluster(rook_version=None, ceph_cluster={"spec": {}})
    scaler = FakeScaler()
    make_operator(cluster=cluster, scaler=scaler).reconcile([make_node("n1")], False)
    assert cluster.calls == []
    assert scaler.prometheus == [1]


def test_reconcile_purges_dead_node():
    cluster = FakeCluster(ceph_cluster=None)
    dead = make_node("dead", taints=[{"key": UNREACHABLE_TAINT, "timeAdded": "2000-01-01T00:00:00Z"}])
    config = Config(purge_dead_nodes=True, clear_dead_nodes=True, maintain_rook_storage_nodes=True)
    make_operator(config, cluster=cluster).reconcile([dead, make_node("alive")], False)
    assert ("purge", "dead", True) in cluster.calls
    assert ("clear", "dead") in cluster.calls
    assert not any(call[0] == "purge" and call[1] == "alive" for call in cluster.calls)


def test_reconcile_skips_purge_without_enough_workers():
    cluster = FakeCluster(ceph_cluster=None)
    dead = make_node("dead", taints=[{"key": UNREACHABLE_TAINT, "timeAdded": "2000-01-01T00:00:00Z"}])
    config = Config(purge_dead_nodes=True, min_ready_worker_nodes=2)
    make_operator(config, cluster=cluster).reconcile([dead, make_node("alive")], False)
    assert not any(call[0] == "purge" for call in cluster.calls)


def test_reconcile_reports_node_errors():
    cluster = FakeCluster(ceph_cluster=None)
    cluster.purge_error = RuntimeError("boom")
    dead = make_node("dead", taints=[{"key": UNREACHABLE_TAINT, "timeAdded": "2000-01-01T00:00:00Z"}])
    scaler = FakeScaler()
    operator = make_operator(Config(purge_dead_nodes=True), cluster=cluster, scaler=scaler)
    with pytest.raises(ReconcileError) as info:
        operator.reconcile([dead], False)
    assert len(info.value.errors) == 1
    assert "reconcile node dead" in str(info.value)
    assert "boom" in str(info.value)
    assert scaler.prometheus == [1]


def test_poll_runs_until_stopped():
    stop = threading.Event()
    scaler = FakeScaler(stop_after=2, stop_event=stop)
    client = FakeClient(fail_first_list=True)
    cluster = FakeCluster(rook_version=None)
    make_operator(client=client, cluster=cluster, scaler=scaler).poll(0.01, 5, stop)
    assert stop.is_set()
    assert client.list_calls == 3
    assert scaler.prometheus == [0, 0]