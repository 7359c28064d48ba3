"""Small Kubernetes helpers: API errors, JSON patches and client interfaces."""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple


class NotFoundError(LookupError):
    """The requested Kubernetes object does not exist."""


class AlreadyExistsError(Exception):
    """The Kubernetes object to create already exists."""


class PatchOp(str, Enum):
    """JSON patch operation names."""

    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


@dataclass(frozen=True)
class JSONPatchOperation:
    """One operation of a JSON patch document."""

    op: PatchOp
    path: str
    value: Any = None

    def to_dict(self) -> dict:
        """Return the operation as a JSON-ready mapping."""
        return {"op": PatchOp(self.op).value, "path": self.path, "value": self.value}


def encode_patches(patches: Sequence[JSONPatchOperation]) -> str:
    """Serialise a list of operations as a JSON patch document."""
    return json.dumps([patch.to_dict() for patch in patches], separators=(",", ":"))


def label_selector(labels: Mapping[str, str]) -> str:
    """Render a label set as an equality selector, keys in sorted order."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def is_not_found(error: Optional[BaseException]) -> bool:
    """Return whether an error, or any error it was raised from, is a not-found error."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, NotFoundError):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


class KubeClient(Protocol):
    """The Kubernetes operations the controller needs; objects are plain dicts."""

    def get_namespace(self, name: str) -> dict: ...

    def list_pods(self, namespace: str, selector: str) -> list: ...

    def list_deployments(self, namespace: str, selector: str) -> list: ...

    def get_deployment(self, namespace: str, name: str) -> dict: ...

    def update_deployment(self, namespace: str, deployment: dict) -> dict: ...

    def delete_deployment(self, namespace: str, name: str) -> None: ...

    def get_daemon_set(self, namespace: str, name: str) -> dict: ...

    def update_daemon_set(self, namespace: str, daemon_set: dict) -> dict: ...

    def get_config_map(self, namespace: str, name: str) -> dict: ...

    def merge_patch_config_map(self, namespace: str, name: str, patch: str) -> dict: ...


class SyncExecutor(Protocol):
    """Runs a command in a container and waits for it to finish."""

    def exec_container(
        self, namespace: str, pod: str, container: str, *command: str
    ) -> Tuple[int, str, str]: ...