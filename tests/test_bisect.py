import math
from decimal import Decimal, localcontext

import pytest

from memprobe.services.bisect import Interval, search, steps

MB = 1024 * 1024
GB = 1024 * MB


def at_least(boundary):
    b = Decimal(boundary)
    return lambda x: x >= b


class TestInterval:
    def test_coerces_to_decimal(self):
        i = Interval(0, "10")
        assert i.low == Decimal(0) and i.high == Decimal(10)
        assert isinstance(i.low, Decimal)

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ValueError):
            Interval(5, 4)

    def test_rejects_non_finite(self):
        with pytest.raises(ValueError):
            Interval(0, Decimal("Infinity"))

    def test_midpoint_is_exact(self):
        assert Interval(0, 10_000_000_001).midpoint == Decimal("5000000000.5")

    def test_narrow_returns_new_interval(self):
        i = Interval(0, 8)
        lo = i.narrow(True)
        hi = i.narrow(False)
        assert (lo.low, lo.high) == (0, 4)
        assert (hi.low, hi.high) == (4, 8)
        assert (i.low, i.high) == (0, 8)

    def test_frozen(self):
        i = Interval(0, 1)
        with pytest.raises(AttributeError):
            i.low = Decimal(1)  # type: ignore[misc]


class TestSteps:
    def test_invariants_hold_every_step(self):
        prev = Interval(0, 10_000_000_000)
        with localcontext() as ctx:
            ctx.prec = 100
            for cur in steps(prev, at_least(123_456_789), 40):
                assert cur.low <= cur.midpoint <= cur.high
                assert prev.low <= cur.low and cur.high <= prev.high
                assert cur.width * 2 <= prev.width
                prev = cur

    def test_bounded_by_max_steps(self):
        calls = []

        def p(x):
            calls.append(x)
            return True

        assert len(list(steps(Interval(0, 1000), p, 5))) == 5
        assert len(calls) == 5

    def test_zero_width_stops_immediately(self):
        assert list(steps(Interval(7, 7), lambda x: True, 10)) == []

    def test_negative_max_steps(self):
        with pytest.raises(ValueError):
            list(steps(Interval(0, 1), lambda x: True, -1))


class TestSearch:
    def test_128mb_within_1kb_after_20_steps(self):
        got = search(Interval(0, GB), at_least(128 * MB), iterations=20)
        assert abs(got - 128 * MB) <= 1024

    @pytest.mark.parametrize("boundary", [1, 17, 4096, 99_999_999, 3 * GB, 9_999_999_999])
    def test_converges_to_boundary_with_epsilon(self, boundary):
        calls = []

        def p(x):
            calls.append(x)
            return x >= boundary

        interval = Interval(0, 10_000_000_000)
        got = search(interval, p, epsilon=1)
        # high only ever moves to values that succeeded, so it never undershoots
        assert got >= boundary
        assert got - boundary <= 1
        assert len(calls) <= math.ceil(math.log2(10_000_000_000 / 1))

    def test_always_succeeds_walks_to_low(self):
        got = search(Interval(0, 10_000_000_000), lambda x: True, iterations=8)
        assert got == Decimal(10_000_000_000) / 256

    def test_never_succeeds_keeps_high(self):
        got = search(Interval(0, 1000), lambda x: False, iterations=30)
        assert got == 1000

    def test_relative_epsilon(self):
        got = search(Interval(0, GB), at_least(300 * MB), epsilon=Decimal("0.001"), relative=True)
        assert got >= 300 * MB
        assert (got - 300 * MB) / got <= Decimal("0.001")

    def test_relative_epsilon_towards_zero_terminates(self):
        got = search(Interval(0, 1), lambda x: True, epsilon="0.5", relative=True)
        assert got >= 0

    def test_iterations_cap_epsilon(self):
        calls = []

        def p(x):
            calls.append(x)
            return x >= 5

        search(Interval(0, 10 ** 9), p, iterations=3, epsilon=1)
        assert len(calls) == 3

    def test_already_converged(self):
        got = search(Interval(10, 10), lambda x: pytest.fail("must not evaluate"), epsilon=1)
        assert got == 10

    def test_zero_iterations_returns_high(self):
        assert search(Interval(0, 64), lambda x: True, iterations=0) == 64

    def test_needs_a_stopping_rule(self):
        with pytest.raises(ValueError):
            search(Interval(0, 1), lambda x: True)

    @pytest.mark.parametrize("eps", [0, -1, "0"])
    def test_epsilon_must_be_positive(self, eps):
        with pytest.raises(ValueError):
            search(Interval(0, 1), lambda x: True, epsilon=eps)

    def test_fresh_walk_per_call(self):
        p = at_least(100)
        a = search(Interval(0, 1000), p, iterations=10)
        b = search(Interval(0, 1000), p, iterations=10)
        assert a == b
