# src/memprobe/executor/restricted.py
from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import ExitStack
from typing import List, Optional

import structlog

from ..core.errors import CgroupUnavailable, ProcessSpawnFailure
from ..core.models import ProcessData
from ..core.settings import Settings
from .base import ExecSpec
from .cgroups import CgroupHandle
from .usage import UsageCollector

log = structlog.get_logger(__name__)

TIMEOUT_EXIT_CODE = 124


class RestrictedExecutor:
    """
    Runs one command under a fresh memory-limited cgroup:
      create group -> helper attaches + execs the command -> wait -> collect usage -> remove group.
    The group is removed on every path, including spawn failures and timeouts.

    Helper failures come back on a status pipe, never through the exit code,
    so every exit code the workload produces is returned as ProcessData.
    """

    def __init__(self, settings: Settings, collector: Optional[UsageCollector] = None):
        self.settings = settings
        self.collector = collector or UsageCollector()

    def wrap(self, spec: ExecSpec, handle: CgroupHandle, status_fd: Optional[int] = None) -> List[str]:
        opts = ["--status-fd", str(status_fd)] if status_fd is not None else []
        return [*self.settings.helper_argv(), *opts, str(handle.path), *spec.cmd]

    def run(self, spec: ExecSpec, memory_limit_bytes: int) -> ProcessData:
        if not spec.cmd:
            raise ValueError("empty command")
        timeout = spec.timeout_s if spec.timeout_s is not None else self.settings.timeout_s

        handle = CgroupHandle.create(memory_limit_bytes, self.settings)
        try:
            with ExitStack() as stack:
                status_r = status_w = None
                if self.settings.helper_reports_status():
                    status_r, status_w = os.pipe()
                    stack.callback(os.close, status_r)
                argv = self.wrap(spec, handle, status_w)

                if spec.workdir is not None:
                    spec.workdir.mkdir(parents=True, exist_ok=True)
                    out = stack.enter_context(open(spec.workdir / "stdout.log", "wb"))
                    err = stack.enter_context(open(spec.workdir / "stderr.log", "wb"))
                else:
                    out = err = subprocess.DEVNULL

                log.info("trial_started", limit=memory_limit_bytes, cgroup=str(handle.path), cmd=spec.cmd)
                start = time.monotonic()
                try:
                    p = subprocess.Popen(
                        argv,
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=err,
                        cwd=str(spec.workdir) if spec.workdir is not None else None,
                        env=dict(spec.env),  # no inheritance
                        start_new_session=True,
                        pass_fds=(status_w,) if status_w is not None else (),
                    )
                except OSError as e:
                    raise ProcessSpawnFailure(f"cannot start helper {argv[0]}: {e.strerror or e}") from e
                finally:
                    if status_w is not None:
                        os.close(status_w)

                rc = self._wait(p, handle, timeout)
                status = _read_status(status_r) if status_r is not None else ""
            data = self.collector.collect(handle, start, rc)
        finally:
            handle.destroy()

        if status:
            # <tag>:<errno>:<message>
            tag, _, rest = status.partition(":")
            detail = rest.partition(":")[2] or rest
            if tag == "attach":
                raise ProcessSpawnFailure(f"helper could not attach to {handle.path}: {detail}")
            raise ProcessSpawnFailure(f"helper could not exec {spec.cmd[0]}: {detail}")
        log.info("trial_finished", limit=memory_limit_bytes, exit_code=rc)
        return data

    @staticmethod
    def _kill(p: subprocess.Popen, handle: CgroupHandle) -> None:
        # cgroup.kill also reaches tasks that setsid()'d out of our process group
        try:
            handle.kill()
        except CgroupUnavailable as e:
            log.warning("cgroup_kill_failed", path=str(handle.path), error=str(e))
        try:
            os.killpg(p.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        p.wait()

    def _wait(self, p: subprocess.Popen, handle: CgroupHandle, timeout: Optional[float]) -> int:
        try:
            return p.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning("trial_timeout", pid=p.pid, timeout_s=timeout)
            self._kill(p, handle)
            return TIMEOUT_EXIT_CODE
        except BaseException:
            self._kill(p, handle)
            raise


def _read_status(fd: int) -> str:
    chunks = []
    while True:
        b = os.read(fd, 4096)
        if not b:
            break
        chunks.append(b)
    return b"".join(chunks).decode("utf-8", "replace")
