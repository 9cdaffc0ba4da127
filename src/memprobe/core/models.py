from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Tuple

from .errors import StoreFormatError


@dataclass(frozen=True)
class ProcessData:
    """Resource usage of one restricted run, read right before its cgroup is removed."""
    exit_code: int
    cpu_usage_seconds: Decimal
    wall_seconds: Decimal
    mem_limit_bytes: int

    def encode(self, workload_id: str) -> str:
        """One store line: ``workloadId exitCode cpu wall mem``."""
        # load strips lines, skips "#" comments and splits on any line break
        if (not workload_id or workload_id != workload_id.strip() or workload_id.startswith("#")
                or len(workload_id.splitlines()) != 1):
            raise StoreFormatError(f"workload id not storable: {workload_id!r}")
        return (
            f"{workload_id} {self.exit_code} {self.cpu_usage_seconds} "
            f"{self.wall_seconds} {self.mem_limit_bytes}"
        )

    @classmethod
    def decode(cls, line: str) -> Tuple[str, "ProcessData"]:
        # the four numeric fields are fixed, so split from the right and let the id keep spaces
        parts = line.strip().rsplit(None, 4)
        if len(parts) != 5:
            raise StoreFormatError(f"expected 5 fields, got {len(parts)}: {line!r}")
        workload_id, exit_code, cpu, wall, mem = parts
        try:
            data = cls(
                exit_code=int(exit_code),
                cpu_usage_seconds=Decimal(cpu),
                wall_seconds=Decimal(wall),
                mem_limit_bytes=int(mem),
            )
        except (ValueError, InvalidOperation) as e:
            raise StoreFormatError(f"bad usage record {line!r}: {e}") from e
        return workload_id, data

    def as_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "cpu_usage_seconds": str(self.cpu_usage_seconds),
            "wall_seconds": str(self.wall_seconds),
            "mem_limit_bytes": self.mem_limit_bytes,
        }
