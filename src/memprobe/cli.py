# src/memprobe/cli.py
"""memprobe: run a command under a memory ceiling, or bisect for the smallest one it survives."""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .core.errors import MemprobeError
from .core.settings import Settings, load_settings
from .core.utils import parse_size
from .executor.base import ExecSpec
from .executor.restricted import RestrictedExecutor
from .logging import setup_logging
from .services.bisect import Interval
from .services.probe import MemoryProbe
from .services.usage_store import UsageStore


def _env_pair(s: str):
    k, sep, v = s.partition("=")
    if not sep or not k:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {s!r}")
    return k, v


def _size(s: str) -> int:
    try:
        return parse_size(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="memprobe", description=__doc__)
    ap.add_argument("--config", type=Path, default=None, help="YAML config (default conf/memprobe.yaml)")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--clean-env", action="store_true", help="start from an empty environment")
    common.add_argument("--env", type=_env_pair, action="append", default=[], metavar="KEY=VALUE")
    common.add_argument("--workdir", type=Path, default=None, help="cwd; stdout.log/stderr.log land here")
    common.add_argument("--timeout", type=float, default=None, help="per-run wall timeout in seconds")
    common.add_argument("cmd", nargs=argparse.REMAINDER, help="-- command [args...]")

    sub = ap.add_subparsers(dest="action", required=True)

    b = sub.add_parser("bisect", parents=[common], help="find the smallest limit the command succeeds under")
    b.add_argument("--low", type=_size, default=None)
    b.add_argument("--high", type=_size, default=None)
    b.add_argument("--iterations", type=int, default=None)
    b.add_argument("--workload-id", default=None, help="key for the usage store")

    r = sub.add_parser("run", parents=[common], help="run once under --limit and print usage as JSON")
    r.add_argument("--limit", type=_size, required=True)
    return ap


def _spec(args) -> ExecSpec:
    cmd: List[str] = args.cmd[1:] if args.cmd[:1] == ["--"] else list(args.cmd)
    env: Dict[str, str] = {} if args.clean_env else dict(os.environ)
    env.update(dict(args.env))
    return ExecSpec(cmd=cmd, env=env, workdir=args.workdir, timeout_s=args.timeout)


def _bisect(args, s: Settings, executor: RestrictedExecutor, spec: ExecSpec) -> int:
    store = UsageStore.load(s.usage_store) if s.usage_store else None
    low = s.low_bytes if args.low is None else args.low
    high = s.high_bytes if args.high is None else args.high
    probe = MemoryProbe(executor, s, store)
    res = probe.find_limit(spec, Interval(low, high), workload_id=args.workload_id, iterations=args.iterations)
    if store is not None and s.usage_store:
        store.save(s.usage_store)
    print(res.boundary)
    return 0


def _run(args, s: Settings, executor: RestrictedExecutor, spec: ExecSpec) -> int:
    data = executor.run(spec, args.limit)
    print(json.dumps(data.as_dict()))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    s = load_settings(args.config)
    log = setup_logging(s.log_level)

    spec = _spec(args)
    if not spec.cmd:
        ap.error("missing command")
    if args.action == "bisect":
        low = s.low_bytes if args.low is None else args.low
        high = s.high_bytes if args.high is None else args.high
        if low > high:
            ap.error(f"low ({low}) must not exceed high ({high})")

    executor = RestrictedExecutor(s)
    try:
        if args.action == "bisect":
            return _bisect(args, s, executor, spec)
        return _run(args, s, executor, spec)
    except MemprobeError as e:
        log.error("memprobe_failed", error=str(e), kind=type(e).__name__)
        print(f"memprobe: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
