from __future__ import annotations
from pathlib import Path
from typing import Optional


class MemprobeError(Exception):
    """Base for every error the probe surfaces to its caller."""


class CgroupUnavailable(MemprobeError):
    """Delegated root missing, controller not enabled, or a control file write rejected."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class ProcessSpawnFailure(MemprobeError):
    pass


class AccountingReadFailure(MemprobeError):
    pass


class StoreFormatError(MemprobeError, ValueError):
    pass
