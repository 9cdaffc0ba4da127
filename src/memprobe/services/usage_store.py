from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import structlog

from ..core.models import ProcessData

log = structlog.get_logger(__name__)


def _rank(d: ProcessData):
    # memory first; the rest only breaks ties so merge order never matters
    return (d.mem_limit_bytes, d.exit_code, d.cpu_usage_seconds, d.wall_seconds)


def _larger(a: ProcessData, b: ProcessData) -> ProcessData:
    return b if _rank(b) > _rank(a) else a


class UsageStore:
    """
    workload id -> best known ProcessData, persisted as one line per record:
      <workloadId> <exitCode> <cpuSeconds> <wallSeconds> <memLimitBytes>
    On key collision the record with the larger memory figure wins.
    """

    def __init__(self, records: Optional[Dict[str, ProcessData]] = None):
        self._lock = threading.Lock()
        self._records: Dict[str, ProcessData] = {}
        for k, v in (records or {}).items():
            self.merge(k, v)

    @classmethod
    def load(cls, path: Path) -> "UsageStore":
        store = cls()
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("usage_store_missing", path=str(path))
            return store
        for line in text.splitlines():
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            wid, data = ProcessData.decode(line)
            store.merge(wid, data)
        log.info("usage_store_loaded", path=str(path), records=len(store))
        return store

    def save(self, path: Path) -> None:
        with self._lock:
            lines = [d.encode(wid) for wid, d in sorted(self._records.items())]
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("".join(line + "\n" for line in lines))
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
        log.info("usage_store_saved", path=str(path), records=len(lines))

    def merge(self, workload_id: str, data: ProcessData) -> ProcessData:
        """Insert or keep the larger record; returns what is stored afterwards."""
        with self._lock:
            cur = self._records.get(workload_id)
            best = data if cur is None else _larger(cur, data)
            self._records[workload_id] = best
            return best

    def get(self, workload_id: str) -> Optional[ProcessData]:
        with self._lock:
            return self._records.get(workload_id)

    def items(self) -> Iterator[Tuple[str, ProcessData]]:
        with self._lock:
            snapshot = list(self._records.items())
        return iter(snapshot)

    def __contains__(self, workload_id: object) -> bool:
        with self._lock:
            return workload_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
