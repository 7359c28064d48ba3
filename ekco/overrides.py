"""Process-wide switches that pause automatic management of some components.

Other migrations can pause Prometheus scaling, MinIO management or kotsadm
management while they run. The operator checks these switches before acting.
"""

import threading

_lock = threading.Lock()
_paused = {"prometheus": False, "minio": False, "kotsadm": False}


def _set(component: str, value: bool) -> None:
    with _lock:
        _paused[component] = value


def _get(component: str) -> bool:
    with _lock:
        return _paused[component]


def pause_prometheus() -> None:
    """Stop the operator from changing Prometheus replica counts."""
    _set("prometheus", True)


def resume_prometheus() -> None:
    """Let the operator change Prometheus replica counts again."""
    _set("prometheus", False)


def prometheus_paused() -> bool:
    """Return whether Prometheus management is paused."""
    return _get("prometheus")


def pause_minio() -> None:
    """Stop the operator from managing HA MinIO."""
    _set("minio", True)


def resume_minio() -> None:
    """Let the operator manage HA MinIO again."""
    _set("minio", False)


def minio_paused() -> bool:
    """Return whether MinIO management is paused."""
    return _get("minio")


def pause_kotsadm() -> None:
    """Stop the operator from managing HA kotsadm."""
    _set("kotsadm", True)


def resume_kotsadm() -> None:
    """Let the operator manage HA kotsadm again."""
    _set("kotsadm", False)


def kotsadm_paused() -> bool:
    """Return whether kotsadm management is paused."""
    return _get("kotsadm")