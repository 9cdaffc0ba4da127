# src/memprobe/executor/cgroups.py
from __future__ import annotations

import tempfile
import threading
from pathlib import Path
from typing import Optional

import structlog

from ..core.errors import CgroupUnavailable
from ..core.settings import Settings
from ..core.utils import real_uid
from . import cgroupfs
from .cgroupfs import (
    CGROUP_CONTROLLERS,
    CGROUP_KILL,
    CGROUP_SUBTREE_CONTROL,
    MEMORY_MAX,
    MEMORY_SWAP_MAX,
)

log = structlog.get_logger(__name__)


def ensure_v2(cgroup_root: Path) -> None:
    if not (cgroup_root / CGROUP_CONTROLLERS).exists():
        raise CgroupUnavailable(f"cgroup v2 is required: {cgroup_root / CGROUP_CONTROLLERS} not found",
                                cgroup_root)


def delegated_root(settings: Settings, uid: Optional[int] = None) -> Path:
    """The subtree systemd delegates to this user (user@<uid>.service), verified to exist.

    A process started with `systemd-run --user --scope` lives below it and
    may therefore move itself into groups we create there.
    """
    ensure_v2(settings.cgroup_root)
    if settings.delegated_root is not None:
        root = settings.delegated_root
    else:
        uid = real_uid() if uid is None else uid
        root = settings.cgroup_root / "user.slice" / f"user-{uid}.slice" / f"user@{uid}.service"
    if not root.is_dir():
        raise CgroupUnavailable(
            f"delegated cgroup root {root} does not exist "
            f"(not running under a systemd user session with delegation?)", root)

    # moving a task needs write access to the common ancestor, so the helper can
    # only attach if we already live below the delegated root
    try:
        mine = cgroupfs.self_cgroup(settings.proc_root, settings.cgroup_root)
    except CgroupUnavailable as e:
        log.debug("self_cgroup_unknown", error=str(e))
    else:
        if mine != root and root not in mine.parents:
            log.warning("outside_delegated_root", cgroup=str(mine), delegated_root=str(root))
    return root


def _enable_memory(node: Path) -> None:
    """Enable the memory controller for children of node."""
    have_file = node / CGROUP_CONTROLLERS
    if have_file.exists():
        try:
            have = set(cgroupfs.read_text(have_file).split())
        except OSError as e:
            raise CgroupUnavailable(f"cannot read {have_file}: {e.strerror or e}", have_file) from e
        if "memory" not in have:
            raise CgroupUnavailable(f"memory controller not delegated to {node} (have: {sorted(have)})", node)
    cgroupfs.write_value(node / CGROUP_SUBTREE_CONTROL, "+memory")


class CgroupHandle:
    """One uniquely named leaf group under <delegated root>/<group_dir>, alive for one run."""

    def __init__(self, path: Path, memory_limit_bytes: int):
        self.path = path
        self.memory_limit_bytes = memory_limit_bytes
        self._lock = threading.Lock()
        self._destroyed = False

    @classmethod
    def create(cls, memory_limit_bytes: int, settings: Settings) -> "CgroupHandle":
        if isinstance(memory_limit_bytes, bool) or not isinstance(memory_limit_bytes, int) or memory_limit_bytes < 0:
            raise ValueError(f"memory limit must be a non-negative int, got {memory_limit_bytes!r}")

        root = delegated_root(settings)
        parent = root / settings.group_dir
        try:
            parent.mkdir(exist_ok=True)
        except OSError as e:
            raise CgroupUnavailable(f"cannot create {parent}: {e.strerror or e}", parent) from e
        _enable_memory(parent)

        # mkdtemp is atomic (O_EXCL mkdir), so concurrent callers never share a leaf
        try:
            leaf = Path(tempfile.mkdtemp(prefix=settings.group_dir, dir=parent))
        except OSError as e:
            raise CgroupUnavailable(f"cannot create leaf under {parent}: {e.strerror or e}", parent) from e

        handle = cls(leaf, memory_limit_bytes)
        try:
            handle._write(MEMORY_MAX, memory_limit_bytes)
            handle._write(MEMORY_SWAP_MAX, 0, check=True)
        except BaseException:
            handle.destroy()
            raise
        log.debug("cgroup_created", path=str(leaf), memory_max=memory_limit_bytes)
        return handle

    def kill(self) -> None:
        """SIGKILL every task in the group, including ones that left our session (kernel 5.14+)."""
        if (self.path / CGROUP_KILL).exists():
            self._write(CGROUP_KILL, 1)

    def _write(self, name: str, val: str | int, check: bool = False) -> None:
        with self._lock:
            if self._destroyed:
                raise CgroupUnavailable(f"{self.path} already destroyed", self.path)
            if check:
                cgroupfs.write_then_check(self.path / name, val)
            else:
                cgroupfs.write_value(self.path / name, val)

    def destroy(self) -> None:
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            try:
                removed = cgroupfs.remove_group(self.path)
            except OSError as e:
                log.warning("cgroup_destroy_failed", path=str(self.path), error=str(e))
                return
            if removed:
                log.debug("cgroup_destroyed", path=str(self.path))
            else:
                # a stale empty group is harmless, the next run gets a fresh name
                log.warning("cgroup_destroy_failed", path=str(self.path))

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __enter__(self) -> "CgroupHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.destroy()

    def __repr__(self) -> str:
        return f"CgroupHandle(path={str(self.path)!r}, memory_limit_bytes={self.memory_limit_bytes})"
