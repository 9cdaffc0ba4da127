from __future__ import annotations
import os
import re

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT])?i?B?\s*$", re.IGNORECASE)
_UNITS = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


def real_uid() -> int:
    return os.getuid()


def parse_size(s: str) -> int:
    """'128M' -> 134217728. Plain numbers are bytes, suffixes are binary (K/M/G/T)."""
    m = _SIZE_RE.match(str(s))
    if m is None:
        raise ValueError(f"invalid memory size: {s!r}")
    value = float(m.group(1))
    if m.group(2):
        value *= _UNITS[m.group(2).upper()]
    return int(value)

