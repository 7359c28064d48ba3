"""Operator and controller configuration."""

import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Any, Mapping, get_origin

_DURATION_UNITS_US = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"`` or ``"500ms"``."""
    original = text
    sign = 1
    if text[:1] in "+-" and text:
        if text[0] == "-":
            sign = -1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {original!r}")
    total_us = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {original!r}")
        total_us += float(match.group(1)) * _DURATION_UNITS_US[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total_us)


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ValueError(f"{key}: invalid boolean {value!r}")
    raise TypeError(f"{key}: expected a boolean, got {type(value).__name__}")


def _to_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{key}: expected an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ValueError(f"{key}: invalid integer {value!r}") from None
    raise TypeError(f"{key}: expected an integer, got {type(value).__name__}")


def _to_str(key: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    raise TypeError(f"{key}: expected a string, got {type(value).__name__}")


def _to_duration(key: str, value: Any) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        return _parse_duration(value.strip())
    raise TypeError(f"{key}: expected a duration, got {type(value).__name__}")


def _to_str_list(key: str, value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return [_to_str(key, item) for item in value]
    raise TypeError(f"{key}: expected a list of strings, got {type(value).__name__}")


def _convert(key: str, kind: Any, value: Any) -> Any:
    if kind is bool:
        return _to_bool(key, value)
    if kind is int:
        return _to_int(key, value)
    if kind is str:
        return _to_str(key, value)
    if kind is timedelta:
        return _to_duration(key, value)
    if kind is list or get_origin(kind) is list:
        return _to_str_list(key, value)
    return value


def _zero() -> timedelta:
    return timedelta(0)


@dataclass
class Config:
    """Settings of the cluster operator, keyed by their configuration names."""

    # how long a node must be unreachable before it is considered dead
    node_unreachable_toleration: timedelta = field(default_factory=_zero)
    # don't purge if it leaves fewer ready masters / workers than these
    min_ready_master_nodes: int = 0
    min_ready_worker_nodes: int = 0

    purge_dead_nodes: bool = False
    clear_dead_nodes: bool = False

    maintain_rook_storage_nodes: bool = False
    rook_storage_nodes_label: str = ""
    rook_storage_nodes: str = ""
    ceph_block_pool: str = ""
    ceph_filesystem: str = ""
    ceph_object_store: str = ""
    min_ceph_pool_replication: int = 0
    max_ceph_pool_replication: int = 0
    rook_priority_class: str = ""
    reconcile_rook_mds_placement: bool = False
    reconcile_ceph_csi_resources: bool = False

    certificates_dir: str = ""

    reconcile_interval: timedelta = field(default_factory=_zero)
    reconcile_timeout: timedelta = field(default_factory=_zero)

    rotate_certs: bool = False
    rotate_certs_image: str = ""
    rotate_certs_namespace: str = ""
    rotate_certs_check_interval: timedelta = field(default_factory=_zero)
    rotate_certs_ttl: timedelta = field(default_factory=_zero)
    registry_cert_namespace: str = ""
    registry_cert_secret: str = ""
    kurl_proxy_cert_namespace: str = ""
    kurl_proxy_cert_secret: str = ""
    kotsadm_kubelet_cert_namespace: str = ""
    kotsadm_kubelet_cert_secret: str = ""
    contour_namespace: str = ""
    contour_cert_namespace: str = ""  # deprecated
    contour_cert_secret: str = ""
    envoy_cert_secret: str = ""
    restart_failed_envoy_pods: bool = False
    envoy_pods_not_ready_duration: timedelta = field(default_factory=_zero)
    enable_internal_load_balancer: bool = False
    internal_load_balancer_haproxy_image: str = ""
    internal_load_balancer_port: int = 0
    host_task_image: str = ""
    host_task_namespace: str = ""
    pod_image_overrides: list[str] = field(default_factory=list)
    auto_approve_kubelet_cert_signing_requests: bool = field(
        default=False, metadata={"key": "auto_approve_kubelet_csrs"}
    )
    rook_minimum_node_count: int = 0
    rook_storage_class: str = ""
    rook_ceph_image: str = ""
    storage_migration_auth_token: str = ""

    # HA MinIO
    enable_ha_minio: bool = False
    minio_namespace: str = ""
    minio_util_image: str = ""

    # HA kotsadm
    enable_ha_kotsadm: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        """Build a config from a mapping of configuration keys; unknown keys are ignored."""
        values = {}
        for f in fields(cls):
            key = f.metadata.get("key", f.name)
            if key in data:
                values[f.name] = _convert(key, f.type, data[key])
        return cls(**values)


@dataclass
class ControllerConfig:
    """Clients and settings shared by the cluster controller."""

    client_config: Any = None
    client: Any = None
    ctrl_client: Any = None
    ceph_v1: Any = None
    alert_manager_v1: Any = None
    prometheus_v1: Any = None
    certificates_dir: str = ""
    rook_priority_class: str = ""
    rotate_certs: bool = False
    rotate_certs_image: str = ""
    rotate_certs_namespace: str = ""
    rotate_certs_check_interval: timedelta = field(default_factory=_zero)
    rotate_certs_ttl: timedelta = field(default_factory=_zero)
    registry_cert_namespace: str = ""
    registry_cert_secret: str = ""
    kurl_proxy_cert_namespace: str = ""
    kurl_proxy_cert_secret: str = ""
    kotsadm_kubelet_cert_namespace: str = ""
    kotsadm_kubelet_cert_secret: str = ""
    contour_namespace: str = ""
    contour_cert_secret: str = ""
    envoy_cert_secret: str = ""
    restart_failed_envoy_pods: bool = False
    envoy_pods_not_ready_duration: timedelta = field(default_factory=_zero)
    host_task_image: str = ""
    host_task_namespace: str = ""
    enable_internal_load_balancer: bool = False
    internal_load_balancer_haproxy_image: str = ""
    auto_approve_kubelet_cert_signing_requests: bool = False
    rook_ceph_image: str = ""