"""Bisection over a numeric interval driven by a boolean predicate.

Convention: ``predicate(x)`` answers "does it succeed at x", and success is
assumed monotone non-decreasing in x (fails below the boundary, succeeds at
or above it). ``True`` keeps the lower half ``[low, mid]``; ``False`` keeps
the upper half ``[mid, high]``. The result is the final ``high``, the
smallest value known (or assumed, if never tested) to succeed.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Callable, Iterator, Optional, Union

import structlog

log = structlog.get_logger(__name__)

Number = Union[Decimal, int, str]
Predicate = Callable[[Decimal], bool]

_TWO = Decimal(2)
_PREC = 60
_MAX_STEPS = 400


def _dec(v: Number) -> Decimal:
    if isinstance(v, float):
        # go through repr so 0.1 stays 0.1
        v = repr(v)
    return v if isinstance(v, Decimal) else Decimal(v)


@dataclass(frozen=True)
class Interval:
    low: Decimal
    high: Decimal

    def __post_init__(self):
        object.__setattr__(self, "low", _dec(self.low))
        object.__setattr__(self, "high", _dec(self.high))
        if not (self.low.is_finite() and self.high.is_finite()):
            raise ValueError(f"interval bounds must be finite: [{self.low}, {self.high}]")
        if self.low > self.high:
            raise ValueError(f"low > high: [{self.low}, {self.high}]")

    @property
    def midpoint(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PREC
            return (self.low + self.high) / _TWO

    @property
    def width(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PREC
            return self.high - self.low

    def narrow(self, succeeded: bool) -> "Interval":
        mid = self.midpoint
        return Interval(self.low, mid) if succeeded else Interval(mid, self.high)


def steps(interval: Interval, predicate: Predicate, max_steps: int) -> Iterator[Interval]:
    """Yield the interval after each of at most ``max_steps`` predicate evaluations."""
    if max_steps < 0:
        raise ValueError("max_steps must be >= 0")
    cur = interval
    for i in range(max_steps):
        mid = cur.midpoint
        if mid == cur.low or mid == cur.high:
            # precision exhausted, halving no longer moves a bound
            return
        ok = bool(predicate(mid))
        cur = cur.narrow(ok)
        log.debug("bisect_step", step=i + 1, value=str(mid), succeeded=ok, low=str(cur.low), high=str(cur.high))
        yield cur


def _step_cap(interval: Interval, epsilon: Decimal, relative: bool) -> int:
    if relative:
        # a relative tolerance never closes when high heads to 0
        return _MAX_STEPS
    n = 0
    with localcontext() as ctx:
        ctx.prec = _PREC
        w = interval.width
        while w > epsilon and n < _MAX_STEPS:
            w /= _TWO
            n += 1
    return n


def search(
    interval: Interval,
    predicate: Predicate,
    *,
    iterations: Optional[int] = None,
    epsilon: Optional[Number] = None,
    relative: bool = False,
) -> Decimal:
    """Bisect and return the boundary (the final ``high``).

    Stops after ``iterations`` evaluations, or once ``high - low`` drops to
    ``epsilon`` (absolute, or relative to ``high`` when ``relative``),
    whichever comes first. At least one rule is required.
    """
    if iterations is None and epsilon is None:
        raise ValueError("need iterations or epsilon")
    if iterations is not None and iterations < 0:
        raise ValueError("iterations must be >= 0")
    eps = None
    if epsilon is not None:
        eps = _dec(epsilon)
        if not eps > 0:
            raise ValueError("epsilon must be > 0")

    limit = iterations
    if eps is not None:
        bound = _step_cap(interval, eps, relative)
        limit = bound if limit is None else min(limit, bound)

    def converged(i: Interval) -> bool:
        if eps is None:
            return False
        tol = eps * abs(i.high) if relative else eps
        return i.width <= tol

    cur = interval
    if converged(cur):
        return cur.high
    for cur in steps(interval, predicate, limit):
        if converged(cur):
            break
    return cur.high
