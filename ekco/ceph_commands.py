"""Running ceph commands in the Rook toolbox (or operator) pod."""

import logging
import re
import time
from typing import Optional, Tuple

import semver

from .kube import KubeClient, SyncExecutor, label_selector

ROOK_CEPH_NS = "rook-ceph"
ROOK_V14 = semver.Version.parse("1.4.0")
CEPH_PACIFIC_MAJOR = 16
CEPH_QUINCY_MAJOR = 17

_OSD_STATUS_RX = re.compile(r"^\s*\d\s+(\S+)")
_SETTLE_SECONDS = 10


class CephCommandError(Exception):
    """A ceph command could not be run or exited with an error."""


class CephNotFoundError(CephCommandError):
    """A ceph command reported ENOENT (exit status 2)."""


def parse_ceph_osd_status_hosts(text: str) -> list:
    """Return the distinct hosts, sorted, named in ``ceph osd status`` output."""
    hosts = set()
    for line in text.splitlines():
        match = _OSD_STATUS_RX.match(line.replace("|", " "))
        if match:
            hosts.add(match.group(1))
    return sorted(hosts)


def object_store_pool_name(store_name: str, pool_name: str) -> str:
    """Pools are named ``<store>.<pool>``, except those starting with a dot."""
    if pool_name.startswith("."):
        return pool_name
    return f"{store_name}.{pool_name}"


def exec_target(rook_version: semver.Version) -> Tuple[str, str]:
    """Return (container name, label selector) of the pod that runs ceph commands."""
    if rook_version < ROOK_V14:
        return "rook-ceph-operator", label_selector({"app": "rook-ceph-operator"})
    return "rook-ceph-tools", label_selector({"app": "rook-ceph-tools"})


class CephToolbox:
    """Runs ceph commands through a synchronous container executor."""

    def __init__(self, client: KubeClient, executor: SyncExecutor, log=None):
        self.client = client
        self.executor = executor
        self.log = log or logging.getLogger(__name__)

    def _target(self, rook_version, exactly_one: bool = False) -> Tuple[str, str]:
        container, selector = exec_target(rook_version)
        pods = self.client.list_pods(ROOK_CEPH_NS, selector)
        if exactly_one and len(pods) != 1:
            raise CephCommandError(f"found {len(pods)} Rook tools pods")
        if not pods:
            raise CephCommandError("found no Rook pods for executing ceph commands")
        return pods[0]["metadata"]["name"], container

    def _run(self, pod: str, container: str, *args: str) -> Tuple[int, str, str]:
        return self.executor.exec_container(ROOK_CEPH_NS, pod, container, *args)

    def exec(self, rook_version, *args: str) -> str:
        """Run a ceph command and return its stdout."""
        pod, container = self._target(rook_version)
        code, stdout, stderr = self._run(pod, container, *args)
        if code == 2:
            self.log.debug("Rook ceph exec %r exited with code %d and stderr: %s", args, code, stderr)
            raise CephNotFoundError(f"exec {list(args)!r}: ENOENT")
        if code != 0:
            self.log.info("Rook ceph exec %r exited with code %d and stderr: %s", args, code, stderr)
            raise CephCommandError(f"exec {list(args)!r}: {code}")
        self.log.debug("Exec Rook ceph %r exited with code %d and stdout: %s", args, code, stdout)
        return stdout

    def purge_osd(self, rook_version, osd_id: str, hostname: str) -> None:
        """Mark an OSD down, purge it and remove its host from the crush map."""
        pod, container = self._target(rook_version)
        try:
            self._run(pod, container, "ceph", "osd", "down", osd_id)
        except Exception:  # the OSD is probably already down
            pass
        code, stdout, stderr = self._run(
            pod, container, "ceph", "osd", "purge", osd_id, "--yes-i-really-mean-it"
        )
        if code != 0:
            self.log.debug("`ceph osd purge %s` stdout: %s", osd_id, stdout)
            raise CephCommandError(f"failed to purge OSD: {stderr}")
        code, stdout, stderr = self._run(pod, container, "ceph", "osd", "crush", "rm", hostname)
        if code != 0:
            self.log.debug("`ceph osd crush rm %s` stdout: %s", hostname, stdout)
            raise CephCommandError(f"failed to rm {hostname} from crush map: {stderr}")

    def filesystem_ok(self, rook_version, name: str) -> bool:
        """Return whether both mds daemons of the filesystem are running."""
        pod, container = self._target(rook_version, exactly_one=True)
        code, stdout, stderr = self._run(pod, container, "ceph", "mds", "metadata")
        if code != 0:
            self.log.debug("`ceph mds metadata` stdout: %s", stdout)
            raise CephCommandError(f"failed to list ceph filesystems: {stderr}")
        return f"{name}-a" in stdout and f"{name}-b" in stdout

    def wait_filesystem(self, rook_version, name: str, timeout: float, poll_interval: float = 1.0) -> None:
        """Wait until the filesystem is ready; raise TimeoutError after ``timeout`` seconds."""
        if self.filesystem_ok(rook_version, name):
            return
        deadline = time.monotonic() + timeout
        while True:
            if time.monotonic() + poll_interval > deadline:
                raise TimeoutError(f"ceph filesystem {name} not ready")
            time.sleep(poll_interval)
            if self.filesystem_ok(rook_version, name):
                # mounts failed in testing when returning right away
                time.sleep(_SETTLE_SECONDS)
                return

    def count_unique_hosts_with_osd(self, rook_version) -> int:
        """Count distinct hosts running an OSD."""
        pod, container = self._target(rook_version)
        code, stdout, stderr = self._run(pod, container, "ceph", "osd", "status")
        if code != 0:
            raise CephCommandError(f"exec `ceph osd status` exit code {code} stderr: {stderr}")
        return len(parse_ceph_osd_status_hosts(stdout))

    def pool_set_size(self, rook_version, ceph_version: Optional[semver.Version], name: str, size: int) -> None:
        args = ["ceph", "osd", "pool", "set", name, "size", str(size)]
        if size == 1 and ceph_version is not None and ceph_version.major >= CEPH_PACIFIC_MAJOR:
            args.append("--yes-i-really-mean-it")
        self.exec(rook_version, *args)

    def pool_set_min_size(self, rook_version, name: str, min_size: int) -> None:
        self.exec(rook_version, "ceph", "osd", "pool", "set", name, "min_size", str(min_size))

    def pool_set_pg_num_min(self, rook_version, name: str, pg_num_min: int) -> None:
        self.exec(rook_version, "ceph", "osd", "pool", "set", name, "pg_num_min", str(pg_num_min))