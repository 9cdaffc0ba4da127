# src/memprobe/executor/cgroupfs.py
"""Read/write of cgroup v2 interface files.

Every write error becomes CgroupUnavailable so callers see one error kind
for "the kernel (or our privileges) refused this".
"""
from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Dict

from ..core.errors import CgroupUnavailable

CGROUP_SUBTREE_CONTROL = "cgroup.subtree_control"
CGROUP_CONTROLLERS = "cgroup.controllers"
CGROUP_PROCS = "cgroup.procs"
CGROUP_KILL = "cgroup.kill"
MEMORY_MAX = "memory.max"
MEMORY_SWAP_MAX = "memory.swap.max"
CPU_STAT = "cpu.stat"
USAGE_USEC = "usage_usec"

_write_lock = threading.Lock()


def read_text(p: Path) -> str:
    return p.read_text(encoding="utf-8")


def read_keyed(p: Path) -> Dict[str, str]:
    """Parse flat-keyed files such as cpu.stat ('usage_usec 1234' per line)."""
    out: Dict[str, str] = {}
    for line in read_text(p).splitlines():
        parts = line.split()
        if len(parts) == 2:
            out[parts[0]] = parts[1]
    return out


def write_value(p: Path, val: str | int) -> None:
    val = str(val)
    with _write_lock:
        try:
            p.write_text(val, encoding="utf-8")
        except OSError as e:
            raise CgroupUnavailable(f"[cgroup] cannot write {p}='{val}': {e.strerror or e}", p) from e


def write_then_check(p: Path, val: str | int) -> None:
    val = str(val)
    write_value(p, val)
    try:
        back = read_text(p).strip()
    except OSError as e:
        raise CgroupUnavailable(f"[cgroup] cannot read back {p}: {e.strerror or e}", p) from e
    if back != val:
        raise CgroupUnavailable(f"[cgroup] write {p}='{val}' but read-back='{back}'", p)


def remove_group(leaf: Path, attempts: int = 5, delay: float = 0.1) -> bool:
    """rmdir the group; the kernel may still be reaping the last task, so retry briefly."""
    for i in range(attempts):
        try:
            leaf.rmdir()
            return True
        except FileNotFoundError:
            return True
        except OSError:
            if i + 1 < attempts:
                time.sleep(delay)
    return False


def cgroup_of(pid: int | str, proc_root: Path = Path("/proc"),
              cgroup_root: Path = Path("/sys/fs/cgroup")) -> Path:
    # unified v2: '0::/user.slice/user-1000.slice/session-3.scope'
    f = proc_root / str(pid) / "cgroup"
    try:
        lines = read_text(f).splitlines()
    except OSError as e:
        raise CgroupUnavailable(f"cannot read {f}: {e.strerror or e}", f) from e
    for line in lines:
        parts = line.split(":", 2)
        if len(parts) == 3 and parts[0] == "0":
            return cgroup_root / parts[2].strip().lstrip("/")
    raise CgroupUnavailable(f"no cgroup v2 entry in {f}", f)


def self_cgroup(proc_root: Path = Path("/proc"), cgroup_root: Path = Path("/sys/fs/cgroup")) -> Path:
    return cgroup_of(os.getpid(), proc_root, cgroup_root)
