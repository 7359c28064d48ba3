"""Replication levels of the Ceph block pool, shared filesystem and object store."""

import logging
from typing import Any, Mapping, Optional, Protocol

import semver

from .ceph_commands import (
    CEPH_QUINCY_MAJOR,
    ROOK_CEPH_NS,
    ROOK_V14,
    CephCommandError,
    CephNotFoundError,
    CephToolbox,
    object_store_pool_name,
)
from .config import ControllerConfig
from .kube import JSONPatchOperation, NotFoundError, PatchOp, encode_patches

ROOK_CEPH_SHARED_FS_METADATA_POOL = "rook-shared-fs-metadata"
ROOK_CEPH_SHARED_FS_DATA_POOL = "rook-shared-fs-data0"

OBJECT_STORE_ROOT_POOL = ".rgw.root"
OBJECT_STORE_METADATA_POOLS = (
    "rgw.control",
    "rgw.meta",
    "rgw.log",
    "rgw.buckets.index",
    "rgw.buckets.non-ec",
)
OBJECT_STORE_METADATA_POOLS_QUINCY = OBJECT_STORE_METADATA_POOLS + ("rgw.otp",)
OBJECT_STORE_DATA_POOLS = ("rgw.buckets.data",)

DEVICE_HEALTH_METRICS_POOL = "device_health_metrics"
DEVICE_HEALTH_METRICS_POOL_QUINCY = ".mgr"

# Ceph Quincy sets pg_num_min of object store pools too high; let the autoscaler go down to this.
OBJECT_STORE_PG_NUM_MIN = 8


class _CephClient(Protocol):
    def get(self, kind: str, namespace: str, name: str) -> dict: ...

    def json_patch(self, kind: str, namespace: str, name: str, patch: str) -> dict: ...


def _replicated_size(pool: Optional[Mapping[str, Any]]) -> int:
    return int(((pool or {}).get("replicated") or {}).get("size", 0))


def _is_quincy_or_later(ceph_version: Optional[semver.Version]) -> bool:
    return ceph_version is not None and ceph_version.major >= CEPH_QUINCY_MAJOR


class PoolReplicator:
    """Scales Ceph pool replication with the number of storage nodes."""

    def __init__(self, config: ControllerConfig, toolbox: CephToolbox, log=None):
        self.config = config
        self.toolbox = toolbox
        self.log = log or logging.getLogger(__name__)

    @property
    def _ceph(self) -> _CephClient:
        return self.config.ceph_v1

    def _get(self, kind: str, name: str) -> Optional[dict]:
        try:
            return self._ceph.get(kind, ROOK_CEPH_NS, name)
        except NotFoundError:
            return None

    def _patch(self, kind: str, name: str, patches) -> None:
        patch = encode_patches(patches)
        self.log.debug("Patching %s %s with %s", kind, name, patch)
        self._ceph.json_patch(kind, ROOK_CEPH_NS, name, patch)

    def _set_pool_sizes(
        self,
        rook_version,
        ceph_version,
        pool: str,
        level: int,
        missing_ok: bool = False,
    ) -> None:
        """Set a pool's size, then its min_size (2 when replicated, else 1).

        With ``missing_ok`` a pool that Ceph reports as absent is skipped.
        """
        try:
            self.toolbox.pool_set_size(rook_version, ceph_version, pool, level)
        except CephNotFoundError:
            if missing_ok:
                return
            raise
        min_size = 2 if level > 1 else 1
        self.toolbox.pool_set_min_size(rook_version, pool, min_size)

    def get_block_pool_replication_level(self, name: str) -> int:
        """Return the replicated size of the CephBlockPool, or 0 if it does not exist."""
        if not name:
            raise ValueError("name of CephBlockPool required")
        pool = self._get("CephBlockPool", name)
        if pool is None:
            return 0
        return _replicated_size(pool.get("spec"))

    def set_block_pool_replication(
        self,
        rook_version: semver.Version,
        ceph_version: Optional[semver.Version],
        name: str,
        level: int,
        full_reconcile: bool,
    ) -> bool:
        """Raise the block pool's replication to ``level``; return whether it was patched."""
        if not name:
            return False
        pool = self._get("CephBlockPool", name)
        if pool is None:
            return False
        current = _replicated_size(pool.get("spec"))
        if not (current < level or full_reconcile):
            return False
        if current != level:
            self.log.info("Changing CephBlockPool replication level from %d to %d", current, level)
        else:
            self.log.debug("Ensuring CephBlockPool replication level is %d", level)
        pool_name = pool["metadata"]["name"]
        self._patch(
            "CephBlockPool",
            pool_name,
            [JSONPatchOperation(PatchOp.REPLACE, "/spec/replicated/size", level)],
        )
        if rook_version < ROOK_V14:
            # Older Rook leaves min_size at 1, which allows degraded I/O and risks data loss.
            self._set_pool_sizes(rook_version, ceph_version, name, level)
        return True

    def set_device_health_metrics_replication(
        self,
        rook_version: semver.Version,
        ceph_version: Optional[semver.Version],
        level: int,
        full_reconcile: bool,
    ) -> bool:
        """Set the device health metrics pool's size and min_size on a full reconcile (Rook 1.4+)."""
        if rook_version < ROOK_V14:
            return False
        # there is no resource holding the current level to compare with
        if not full_reconcile:
            return False
        pool = (
            DEVICE_HEALTH_METRICS_POOL_QUINCY
            if _is_quincy_or_later(ceph_version)
            else DEVICE_HEALTH_METRICS_POOL
        )
        self.log.debug("Ensuring %s replication level is %d", pool, level)
        self._set_pool_sizes(rook_version, ceph_version, pool, level)
        return True

    def set_filesystem_replication(
        self,
        rook_version: semver.Version,
        ceph_version: Optional[semver.Version],
        name: str,
        level: int,
        full_reconcile: bool,
    ) -> bool:
        """Raise the filesystem's data and metadata pool replication; return whether it was patched."""
        if not name:
            return False
        filesystem = self._get("CephFilesystem", name)
        if filesystem is None:
            return False
        spec = filesystem.get("spec") or {}
        patches = [
            JSONPatchOperation(PatchOp.REPLACE, f"/spec/dataPools/{index}/replicated/size", level)
            for index, pool in enumerate(spec.get("dataPools") or [])
            if _replicated_size(pool) < level
        ]
        current = _replicated_size(spec.get("metadataPool"))
        if current < level:
            patches.append(
                JSONPatchOperation(PatchOp.REPLACE, "/spec/metadataPool/replicated/size", level)
            )
        if not (patches or full_reconcile):
            return False
        if patches:
            self.log.info("Changing CephFilesystem pool replication level from %d to %d", current, level)
        else:
            self.log.debug("Ensuring CephFilesystem pool replication level is %d", level)
        self._patch("CephFilesystem", filesystem["metadata"]["name"], patches)
        if rook_version < ROOK_V14:
            # older Rook ignores size changes in the CephFilesystem
            for pool in (ROOK_CEPH_SHARED_FS_METADATA_POOL, ROOK_CEPH_SHARED_FS_DATA_POOL):
                self._set_pool_sizes(rook_version, ceph_version, pool, level)
        return True

    def set_object_store_replication(
        self,
        rook_version: semver.Version,
        ceph_version: Optional[semver.Version],
        name: str,
        level: int,
        full_reconcile: bool,
    ) -> bool:
        """Raise the object store's pool replication; return whether it was patched."""
        if not name:
            return False
        store = self._get("CephObjectStore", name)
        if store is None:
            return False
        spec = store.get("spec") or {}
        patches = []
        current = _replicated_size(spec.get("dataPool"))
        if current < level:
            patches.append(
                JSONPatchOperation(PatchOp.REPLACE, "/spec/dataPool/replicated/size", level)
            )
        current = _replicated_size(spec.get("metadataPool"))
        if current < level:
            patches.append(
                JSONPatchOperation(PatchOp.REPLACE, "/spec/metadataPool/replicated/size", level)
            )
        if not (patches or full_reconcile):
            return False
        if patches:
            self.log.info("Changing CephObjectStore pool replication level from %d to %d", current, level)
        else:
            self.log.debug("Ensuring CephObjectStore pool replication level is %d", level)
        self._patch("CephObjectStore", store["metadata"]["name"], patches)

        if rook_version < ROOK_V14:
            # older Rook ignores size changes in the CephObjectStore
            for pool in (OBJECT_STORE_ROOT_POOL, *OBJECT_STORE_METADATA_POOLS, *OBJECT_STORE_DATA_POOLS):
                # the non-ec metadata pool does not always exist
                self._set_pool_sizes(
                    rook_version,
                    ceph_version,
                    object_store_pool_name(name, pool),
                    level,
                    missing_ok=pool in OBJECT_STORE_METADATA_POOLS,
                )

        if _is_quincy_or_later(ceph_version):
            failures = []
            for pool in (OBJECT_STORE_ROOT_POOL, *OBJECT_STORE_METADATA_POOLS_QUINCY):
                try:
                    self.toolbox.pool_set_pg_num_min(
                        rook_version, object_store_pool_name(name, pool), OBJECT_STORE_PG_NUM_MIN
                    )
                except CephCommandError as err:
                    failures.append(f"set ceph object store metadata pool {pool} pg_num_min: {err}")
            if failures:
                raise CephCommandError("; ".join(failures))
        return True