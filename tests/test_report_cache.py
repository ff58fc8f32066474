"""
Tests for the Report Cache

Covers single-flight computation, stale-while-revalidate serving, refresh
intervals, invalidation and failure fallbacks.
"""
import asyncio
import pytest
from datetime import date

from src.core.error_taxonomy import GatewayError
from src.core.report_params import AsOfParams, NoParams
from src.data.report_cache import ReportCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class CountingCompute:
    """Returns 1, 2, 3... on successive calls; can be held open or made to fail."""

    def __init__(self):
        self.calls = 0
        self.gate = None
        self.fail_with = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return self.calls


PARAMS = AsOfParams(as_of=date(2025, 1, 5))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ReportCache({"dashboard_metrics": 30, "market_rates": 60}, clock=clock)


class TestPopulation:
    """Tests for first population and hits."""

    @pytest.mark.asyncio
    async def test_first_call_computes_and_second_hits(self, cache):
        compute = CountingCompute()
        assert await cache.get("staff_roster", PARAMS, compute, list) == 1
        assert await cache.get("staff_roster", PARAMS, compute, list) == 1
        assert compute.calls == 1

        stats = cache.stats()["staff_roster"]
        assert (stats["misses"], stats["hits"], stats["entries"]) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, cache):
        compute = CountingCompute()
        compute.gate = asyncio.Event()

        callers = [asyncio.create_task(cache.get("staff_roster", PARAMS, compute, list)) for _ in range(5)]
        await asyncio.sleep(0)
        compute.gate.set()
        results = await asyncio.gather(*callers)

        assert results == [1, 1, 1, 1, 1]
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_callers_get_independent_copies(self, cache):
        async def compute():
            return [{"id": "staff-1", "assignedCustomers": 2}]

        first = await cache.get("staff_roster", PARAMS, compute, list)
        first[0]["assignedCustomers"] = 0
        first.append({"id": "ghost"})

        assert await cache.get("staff_roster", PARAMS, compute, list) == [{"id": "staff-1", "assignedCustomers": 2}]
        assert cache.peek("staff_roster", PARAMS).value == [{"id": "staff-1", "assignedCustomers": 2}]

    @pytest.mark.asyncio
    async def test_different_params_are_different_keys(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)
        await cache.get("staff_roster", AsOfParams(as_of=date(2025, 1, 6)), compute, list)
        assert compute.calls == 2


class TestStaleness:
    """Tests for refresh intervals and stale-while-revalidate."""

    @pytest.mark.asyncio
    async def test_expired_value_served_while_refreshing(self, cache, clock):
        compute = CountingCompute()
        assert await cache.get("dashboard_metrics", PARAMS, compute, dict) == 1

        clock.advance(31)
        assert await cache.get("dashboard_metrics", PARAMS, compute, dict) == 1

        await cache.wait_idle()
        assert compute.calls == 2
        assert await cache.get("dashboard_metrics", PARAMS, compute, dict) == 2

    @pytest.mark.asyncio
    async def test_within_interval_does_not_refresh(self, cache, clock):
        compute = CountingCompute()
        await cache.get("dashboard_metrics", PARAMS, compute, dict)
        clock.advance(29)
        await cache.get("dashboard_metrics", PARAMS, compute, dict)
        await cache.wait_idle()
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_kinds_without_interval_never_expire(self, cache, clock):
        compute = CountingCompute()
        await cache.get("scheme_roster", NoParams(), compute, list)
        clock.advance(10_000)
        await cache.get("scheme_roster", NoParams(), compute, list)
        await cache.wait_idle()
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_refresh_expired_schedules_only_expired_entries(self, cache, clock):
        dashboard, roster = CountingCompute(), CountingCompute()
        await cache.get("dashboard_metrics", PARAMS, dashboard, dict)
        await cache.get("staff_roster", PARAMS, roster, list)

        clock.advance(45)
        assert cache.refresh_expired() == 1
        await cache.wait_idle()
        assert (dashboard.calls, roster.calls) == (2, 1)


class TestInvalidation:
    """Tests for explicit invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_recomputes_in_background(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)

        assert cache.invalidate("staff_roster") == 1
        await cache.wait_idle()

        assert compute.calls == 2
        assert await cache.get("staff_roster", PARAMS, compute, list) == 2

    @pytest.mark.asyncio
    async def test_invalidate_with_match_only_touches_matching_keys(self, cache):
        compute = CountingCompute()
        other = AsOfParams(as_of=date(2025, 1, 6))
        await cache.get("staff_roster", PARAMS, compute, list)
        await cache.get("staff_roster", other, compute, list)

        count = cache.invalidate("staff_roster", match=lambda p: p.as_of == date(2025, 1, 6))
        await cache.wait_idle()

        assert count == 1
        assert cache.peek("staff_roster", PARAMS).value == 1
        assert cache.peek("staff_roster", other).value == 3

    @pytest.mark.asyncio
    async def test_invalidate_other_kind_is_noop(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)
        assert cache.invalidate("scheme_roster") == 0
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_invalidation_during_refresh_triggers_another(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)

        compute.gate = asyncio.Event()
        cache.invalidate("staff_roster")
        await asyncio.sleep(0)
        # Change arrives while the first recompute is still running
        cache.invalidate("staff_roster")
        compute.gate.set()
        await cache.wait_idle()

        assert compute.calls == 3
        entry = cache.peek("staff_roster", PARAMS)
        assert entry.value == 3
        assert entry.stale is False

    @pytest.mark.asyncio
    async def test_force_refresh_waits_for_new_value(self, cache):
        compute = CountingCompute()
        await cache.get("scheme_roster", NoParams(), compute, list)
        assert await cache.get("scheme_roster", NoParams(), compute, list, force_refresh=True) == 2


class TestFailures:
    """Tests for degraded results when computation fails."""

    @pytest.mark.asyncio
    async def test_first_failure_returns_empty_without_storing(self, cache):
        errors = []
        cache.on_error = lambda kind, key, e: errors.append((kind, e))
        compute = CountingCompute()
        compute.fail_with = GatewayError("down", collection="payments")

        assert await cache.get("staff_roster", PARAMS, compute, list) == []
        assert cache.peek("staff_roster", PARAMS).has_value is False
        assert errors and errors[0][0] == "staff_roster"

        compute.fail_with = None
        assert await cache.get("staff_roster", PARAMS, compute, list) == 2

    @pytest.mark.asyncio
    async def test_failure_after_success_keeps_previous_value(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)

        compute.fail_with = GatewayError("down")
        assert await cache.get("staff_roster", PARAMS, compute, list, force_refresh=True) == 1

        entry = cache.peek("staff_roster", PARAMS)
        assert entry.value == 1
        assert isinstance(entry.last_error, GatewayError)
        assert cache.stats()["staff_roster"]["failures"] == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_after_invalidation_stays_stale(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)

        compute.fail_with = GatewayError("down")
        cache.invalidate("staff_roster")
        await cache.wait_idle()

        entry = cache.peek("staff_roster", PARAMS)
        assert entry.value == 1
        assert entry.stale is True


class TestCancellation:
    """Tests for callers abandoning a shared computation."""

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_computation(self, cache):
        compute = CountingCompute()
        compute.gate = asyncio.Event()

        first = asyncio.create_task(cache.get("staff_roster", PARAMS, compute, list))
        second = asyncio.create_task(cache.get("staff_roster", PARAMS, compute, list))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        compute.gate.set()
        assert await second == 1
        assert compute.calls == 1
        assert cache.peek("staff_roster", PARAMS).value == 1

    @pytest.mark.asyncio
    async def test_aclose_cancels_background_refreshes(self, cache):
        compute = CountingCompute()
        await cache.get("staff_roster", PARAMS, compute, list)

        compute.gate = asyncio.Event()
        cache.invalidate("staff_roster")
        await cache.aclose()

        entry = cache.peek("staff_roster", PARAMS)
        assert entry.task is None
        assert entry.value == 1
