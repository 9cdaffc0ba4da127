from __future__ import annotations

import time
from decimal import Decimal
from typing import Optional

import structlog

from ..core.errors import AccountingReadFailure
from ..core.models import ProcessData
from . import cgroupfs
from .cgroupfs import CPU_STAT, USAGE_USEC
from .cgroups import CgroupHandle

log = structlog.get_logger(__name__)

_USEC = Decimal(1_000_000)


def _load(cpu: Decimal, wall: Decimal) -> Optional[float]:
    """Average busy CPUs over the run, or None for a zero wall time."""
    if not wall:
        return None
    return round(float(cpu / wall), 3)


def read_cpu_usage(handle: CgroupHandle) -> Decimal:
    """CPU seconds used by every task that was ever in the group (cpu.stat usage_usec)."""
    p = handle.path / CPU_STAT
    try:
        stat = cgroupfs.read_keyed(p)
    except OSError as e:
        raise AccountingReadFailure(f"cannot read {p}: {e.strerror or e}") from e
    if USAGE_USEC not in stat:
        raise AccountingReadFailure(f"{USAGE_USEC} missing from {p}")
    try:
        usec = int(stat[USAGE_USEC])
    except ValueError as e:
        raise AccountingReadFailure(f"bad {USAGE_USEC} in {p}: {stat[USAGE_USEC]!r}") from e
    return Decimal(usec) / _USEC


class UsageCollector:
    """Turns a finished run's group into a ProcessData. Must run before the group is removed."""

    def collect(self, handle: CgroupHandle, start: float, exit_code: int) -> ProcessData:
        try:
            cpu = read_cpu_usage(handle)
        except AccountingReadFailure as e:
            log.warning("cpu_accounting_unavailable", path=str(handle.path), error=str(e))
            cpu = Decimal(0)
        wall = Decimal(repr(max(time.monotonic() - start, 0.0)))
        log.info(
            "usage_collected",
            path=str(handle.path),
            exit_code=exit_code,
            cpu_s=float(cpu),
            wall_s=float(wall),
            load=_load(cpu, wall),
        )
        return ProcessData(
            exit_code=exit_code,
            cpu_usage_seconds=cpu,
            wall_seconds=wall,
            mem_limit_bytes=handle.memory_limit_bytes,
        )
