from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- cgroup filesystem ----
    cgroup_root: Path = Path("/sys/fs/cgroup")
    proc_root: Path = Path("/proc")
    delegated_root: Optional[Path] = None  # None -> user.slice/user-<uid>.slice/user@<uid>.service
    group_dir: str = "memprobe"

    # ---- execution ----
    helper: Optional[List[str]] = None  # None -> bundled memprobe.executor.cgexec
    helper_status_fd: Optional[bool] = None  # None -> only the bundled helper speaks --status-fd
    timeout_s: Optional[float] = None
    success_exit_code: int = 95

    # ---- bisection ----
    iterations: int = 8
    low_bytes: int = 0
    high_bytes: int = 10_000_000_000

    # ---- usage store / logging ----
    usage_store: Optional[Path] = None
    log_level: str = "INFO"

    # env prefix MEMPROBE_*
    model_config = SettingsConfigDict(env_prefix="MEMPROBE_", extra="ignore")

    def helper_argv(self) -> List[str]:
        if self.helper:
            return list(self.helper)
        return [sys.executable, "-m", "memprobe.executor.cgexec"]

    def helper_reports_status(self) -> bool:
        if self.helper_status_fd is not None:
            return self.helper_status_fd
        return not self.helper


def load_settings(conf: Optional[Path] = None) -> Settings:
    # 0) base from MEMPROBE_* env
    s = Settings()

    # 1) conf/memprobe.yaml (or MEMPROBE_CONF) on top
    path = conf or Path(os.environ.get("MEMPROBE_CONF", "conf/memprobe.yaml"))
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    known = set(Settings.model_fields)
    update: Dict[str, Any] = {k: v for k, v in data.items() if k in known}
    if not update:
        return s

    # re-validate so YAML strings become Path/int like env values do
    merged = s.model_dump()
    merged.update(update)
    return Settings.model_validate(merged)
