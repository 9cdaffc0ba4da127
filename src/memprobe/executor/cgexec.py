# src/memprobe/executor/cgexec.py
"""Attach-and-exec helper: move ourselves into a cgroup, then become the workload.

    python -m memprobe.executor.cgexec [--status-fd N] <cgroup-path> <cmd> [args...]

The environment is passed through untouched, so the workload sees exactly
what the caller gave this helper.

With --status-fd, a failure to attach or exec is also written to fd N as
``attach:<errno>:<message>`` or ``exec:<errno>:<message>``. The fd is
close-on-exec, so a successful exec leaves it empty and the workload's own
exit codes are never confused with ours.
"""
import argparse
import os
import sys
from pathlib import Path

from .cgroupfs import CGROUP_PROCS

EXIT_ATTACH_FAILED = 125
EXIT_EXEC_FAILED = 127

CGROUP_MOUNT = Path("/sys/fs/cgroup")


def _fail(status_fd, tag: str, e: OSError, code: int, what: str):
    print(f"cgexec: cannot {what}: {e}", file=sys.stderr)
    if status_fd is not None:
        try:
            os.write(status_fd, f"{tag}:{e.errno or 0}:{e.strerror or e}".encode())
        except OSError:
            pass
    sys.exit(code)


def main(argv=None):
    ap = argparse.ArgumentParser(prog="cgexec")
    ap.add_argument("--status-fd", type=int, default=None, help="report attach/exec failures on this fd")
    ap.add_argument("cgroup", help="cgroup directory (relative paths resolve under /sys/fs/cgroup)")
    ap.add_argument("cmd", nargs=argparse.REMAINDER)
    args = ap.parse_args(argv)

    cmd = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
    if not cmd:
        ap.error("missing command")

    status_fd = args.status_fd
    if status_fd is not None:
        # pass_fds made it inheritable; the workload must not keep it open
        os.set_inheritable(status_fd, False)

    group = Path(args.cgroup)
    if not group.is_absolute():
        group = CGROUP_MOUNT / group

    # '0' = the writing process itself
    try:
        (group / CGROUP_PROCS).write_text("0")
    except OSError as e:
        _fail(status_fd, "attach", e, EXIT_ATTACH_FAILED, f"attach to {group}")

    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        _fail(status_fd, "exec", e, EXIT_EXEC_FAILED, f"exec {cmd[0]}")


if __name__ == "__main__":
    main()
