from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import List, Optional

import structlog

from ..core.models import ProcessData
from ..core.settings import Settings
from ..executor.base import ExecSpec
from ..executor.restricted import RestrictedExecutor
from .bisect import Interval, search
from .usage_store import UsageStore

log = structlog.get_logger(__name__)


@dataclass
class ProbeResult:
    boundary: int
    interval: Interval
    trials: List[ProcessData] = field(default_factory=list)
    best: Optional[ProcessData] = None  # smallest limit that succeeded


class MemoryProbe:
    """
    Finds the smallest memory.max a workload still succeeds under.
    "Succeeds" = the workload exits with settings.success_exit_code (95 by default);
    anything else, OOM kills included, counts as failure at that limit.
    Cgroup/spawn errors are not failures: they propagate and abort the search.
    """

    def __init__(self, executor: RestrictedExecutor, settings: Settings, store: Optional[UsageStore] = None):
        self.executor = executor
        self.settings = settings
        self.store = store

    def run(self, spec: ExecSpec, limit: int) -> ProcessData:
        return self.executor.run(spec, limit)

    def succeeded(self, data: ProcessData) -> bool:
        return data.exit_code == self.settings.success_exit_code

    def can_run(self, spec: ExecSpec, limit: int) -> bool:
        return self.succeeded(self.run(spec, limit))

    def find_limit(
        self,
        spec: ExecSpec,
        interval: Optional[Interval] = None,
        *,
        workload_id: Optional[str] = None,
        iterations: Optional[int] = None,
    ) -> ProbeResult:
        interval = interval or Interval(self.settings.low_bytes, self.settings.high_bytes)
        iterations = self.settings.iterations if iterations is None else iterations
        trials: List[ProcessData] = []

        def predicate(value: Decimal) -> bool:
            data = self.run(spec, _floor_bytes(value))
            trials.append(data)
            return self.succeeded(data)

        start = self._starting_interval(interval, workload_id, predicate)
        log.info("bisect_started", low=str(start.low), high=str(start.high),
                 iterations=iterations, workload_id=workload_id)
        boundary = _ceil_bytes(search(start, predicate, iterations=iterations))

        ok = [t for t in trials if self.succeeded(t)]
        best = min(ok, key=lambda t: t.mem_limit_bytes) if ok else None
        if best is not None and self.store is not None and workload_id:
            self.store.merge(workload_id, best)
        log.info("bisect_finished", boundary=boundary, trials=len(trials), workload_id=workload_id)
        return ProbeResult(boundary=boundary, interval=start, trials=trials, best=best)

    def _starting_interval(self, interval: Interval, workload_id: Optional[str], predicate) -> Interval:
        """Use a recorded success to shrink the upper bound, if it still holds."""
        if self.store is None or not workload_id:
            return interval
        rec = self.store.get(workload_id)
        if rec is None or not self.succeeded(rec):
            return interval
        if not (interval.low < rec.mem_limit_bytes <= interval.high):
            return interval
        top = min(interval.high, Decimal(rec.mem_limit_bytes) * 2)
        if top >= interval.high:
            return interval
        if predicate(top):
            log.info("bisect_interval_tightened", workload_id=workload_id, high=str(top))
            return Interval(interval.low, top)
        # it fails at twice the old figure, so the boundary lies above it
        log.info("bisect_history_stale", workload_id=workload_id, recorded=rec.mem_limit_bytes)
        return Interval(top, interval.high)


def _floor_bytes(v: Decimal) -> int:
    return int(v.to_integral_value(rounding=ROUND_FLOOR))


def _ceil_bytes(v: Decimal) -> int:
    return int(v.to_integral_value(rounding=ROUND_CEILING))
