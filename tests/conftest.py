import os
import shutil
from pathlib import Path
from types import SimpleNamespace

import pytest

from memprobe.core.settings import Settings
from memprobe.executor import cgroupfs

SRC = Path(__file__).resolve().parents[1] / "src"
WORKLOADS = Path(__file__).resolve().parent / "workloads"


@pytest.fixture
def fake_cgroupfs(tmp_path, monkeypatch):
    """
    A cgroup v2 tree under tmp_path with a delegated user root:
      <tmp>/cgroup/user.slice/user-<uid>.slice/user@<uid>.service
    rmdir of a group also drops its interface files, like the kernel does.
    """
    root = tmp_path / "cgroup"
    root.mkdir()
    (root / "cgroup.controllers").write_text("cpuset cpu io memory pids\n")
    uid = os.getuid()
    delegated = root / "user.slice" / f"user-{uid}.slice" / f"user@{uid}.service"
    delegated.mkdir(parents=True)
    (delegated / "cgroup.controllers").write_text("cpu memory pids\n")

    def _remove(leaf, attempts=5, delay=0.1):
        if leaf.exists():
            shutil.rmtree(leaf)
        return True

    monkeypatch.setattr(cgroupfs, "remove_group", _remove)
    settings = Settings(cgroup_root=root, proc_root=tmp_path / "proc")
    return SimpleNamespace(root=root, delegated=delegated, parent=delegated / "memprobe", settings=settings)


@pytest.fixture
def child_env():
    # the bundled helper runs as `python -m memprobe.executor.cgexec` under this env
    return {"PYTHONPATH": str(SRC)}


@pytest.fixture
def workloads_dir():
    return WORKLOADS
