"""
Tests for the Report Service

End-to-end through the in-memory gateway: fetch, aggregate, cache,
invalidation on change events and degraded results on gateway failure.
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import date
from decimal import Decimal

from src.agents.report_service import ReportService
from src.core.error_taxonomy import ErrorCategory, InvalidReportParameters
from src.core.observability import SpanKind
from src.core.report_params import StaffParams
from src.data.gateway import InMemoryGateway
from src.data.report_models import DashboardMetrics, MarketRates
from tests.sample_ledger import AS_OF, RANGE_END, RANGE_START, sample_ledger


@pytest.fixture
def gateway():
    return InMemoryGateway(sample_ledger())


@pytest_asyncio.fixture
async def service(gateway):
    service = ReportService(gateway, today=lambda: AS_OF)
    await service.start()
    yield service
    await service.aclose()


async def settle(service):
    """Deliver queued change events and wait for the recomputes they trigger."""
    await service.notifier.drain()
    await service.cache.wait_idle()


class TestReports:
    """Every report kind through the full pipeline."""

    @pytest.mark.asyncio
    async def test_dashboard_metrics(self, service):
        metrics = await service.dashboard_metrics()
        assert metrics.total_customers == 2
        assert metrics.active_schemes == 2
        assert metrics.today_collections == Decimal("1000")
        assert metrics.total_collections == Decimal("2500")
        assert metrics.today_withdrawals == Decimal("400")

    @pytest.mark.asyncio
    async def test_collection_trend_and_distribution(self, service):
        trend = await service.collection_trend()
        assert [p.date for p in trend] == ["2025-01-01", "2025-01-02", "2025-01-05"]

        buckets = {b.method_key: b.count for b in await service.payment_method_distribution()}
        assert buckets == {"cash": 3, "upi": 1, "bank_transfer": 1}

    @pytest.mark.asyncio
    async def test_staff_roster_and_detail(self, service):
        roster = await service.staff_roster()
        assert {s.id: s.assigned_customers for s in roster} == {"staff-1": 2, "staff-2": 1}

        detail = await service.staff_detail("staff-1")
        assert detail.total_collections == Decimal("2500")
        assert detail.recent_payments[0].scheme_name == "Gold Daily"
        assert [c.name for c in detail.assigned_customers_list] == ["Anita Sharma", "Babu Rao"]

    @pytest.mark.asyncio
    async def test_unknown_staff_detail_is_none(self, service):
        assert await service.staff_detail("nobody") is None

    @pytest.mark.asyncio
    async def test_scheme_reports(self, service):
        roster = await service.scheme_roster()
        # Newest scheme first
        assert [s.id for s in roster] == ["s-silver", "s-gold"]

        performance = {s.scheme_id: s for s in await service.scheme_performance_report()}
        assert performance["s-silver"].avg_per_enrollment == 900

    @pytest.mark.asyncio
    async def test_market_rates(self, service):
        rates = await service.market_rates()
        assert rates.current.gold_rate == Decimal("6400")
        assert rates.current.silver_rate == Decimal("78")
        assert len(rates.history) == 2

    @pytest.mark.asyncio
    async def test_withdrawals_roster(self, service):
        roster = await service.withdrawals_roster()
        assert [w.id for w in roster] == ["w-1", "w-4", "w-2", "w-3"]
        assert roster[2].customer_name == "Babu Rao"

    @pytest.mark.asyncio
    async def test_series(self, service):
        inflow = await service.inflow_series(RANGE_START, RANGE_END)
        outflow = await service.outflow_series(RANGE_START, RANGE_END)
        cash_flow = await service.cash_flow_series(RANGE_START, RANGE_END)

        assert inflow.total_amount == Decimal("2500")
        assert outflow.total_amount == Decimal("550")
        assert cash_flow.net_cash_flow == Decimal("1950")

    @pytest.mark.asyncio
    async def test_daily_report(self, service):
        report = await service.daily_report()
        assert report.total_amount == Decimal("1000")
        assert report.by_staff[0].staff_name == "Ravi Kumar"
        assert {p.customer_name for p in report.payments} == {"Anita Sharma", "Babu Rao"}

    @pytest.mark.asyncio
    async def test_staff_performance_report(self, service):
        report = {s.staff_id: s for s in await service.staff_performance_report(RANGE_START, RANGE_END)}
        assert report["staff-1"].target_achievement == 50
        assert report["staff-2"].target_achievement == 0

    @pytest.mark.asyncio
    async def test_customer_payment_report_with_search(self, service):
        rows = await service.customer_payment_report(RANGE_START, RANGE_END)
        assert len(rows) == 3

        rows = await service.customer_payment_report(RANGE_START, RANGE_END, search="  Babu ")
        assert [r.customer_name for r in rows] == ["Babu Rao"]

    @pytest.mark.asyncio
    async def test_access_control_roster(self, service):
        roster = await service.access_control_roster()
        assert [e.name for e in roster.entries] == ["N/A", "Anita Sharma", "Ravi Kumar"]


class TestParameters:
    """Caller errors are rejected before any fetch."""

    @pytest.mark.asyncio
    async def test_range_with_start_after_end(self, service, gateway):
        with pytest.raises(InvalidReportParameters):
            await service.staff_performance_report(date(2025, 1, 10), date(2025, 1, 1))
        assert gateway.reads == []

    @pytest.mark.asyncio
    async def test_blank_staff_id(self, service, gateway):
        with pytest.raises(InvalidReportParameters):
            await service.staff_detail("   ")
        assert gateway.reads == []


class TestCaching:
    """Caching and batching behaviour seen from the service."""

    @pytest.mark.asyncio
    async def test_second_call_does_not_read(self, service, gateway):
        await service.scheme_roster()
        reads = len(gateway.reads)
        await service.scheme_roster()
        assert len(gateway.reads) == reads

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self):
        gateway = InMemoryGateway(sample_ledger(), latency_seconds=0.01)
        async with ReportService(gateway, today=lambda: AS_OF) as service:
            results = await asyncio.gather(*(service.dashboard_metrics() for _ in range(5)))

        assert all(r == results[0] for r in results)
        assert gateway.reads.count(("select", "payments")) == 1

    @pytest.mark.asyncio
    async def test_mutating_a_result_does_not_leak_into_cache(self, service):
        first = await service.dashboard_metrics()
        first.total_customers = 999

        again = await service.dashboard_metrics()
        assert again.total_customers == 2

    @pytest.mark.asyncio
    async def test_mutating_nested_rows_does_not_leak_into_cache(self, service):
        detail = await service.staff_detail("staff-1")
        detail.assigned_customers_list.clear()

        assert len((await service.staff_detail("staff-1")).assigned_customers_list) == 2

    @pytest.mark.asyncio
    async def test_bulk_assignment_counts_use_one_read(self, service, gateway):
        await service.staff_roster()
        assert gateway.reads.count(("select", "staff_assignments")) == 1
        assert ("count", "staff_assignments") not in gateway.reads

    @pytest.mark.asyncio
    async def test_per_staff_counts_without_bulk_reads(self):
        gateway = InMemoryGateway(sample_ledger(), supports_bulk_reads=False)
        async with ReportService(gateway, today=lambda: AS_OF) as service:
            roster = await service.staff_roster()

        assert {s.id: s.assigned_customers for s in roster} == {"staff-1": 2, "staff-2": 1}
        assert gateway.reads.count(("count", "staff_assignments")) == 2
        assert ("select", "staff_assignments") not in gateway.reads

    @pytest.mark.asyncio
    async def test_spans_recorded_per_phase(self, service):
        await service.market_rates()
        names = {s.name for s in service.tracer.recent_spans()}
        assert {"market_rates.fetch", "market_rates.aggregate", "market_rates.refresh"} <= names
        assert service.tracer.recent_spans(kind=SpanKind.FETCH)[0].name == "market_rates.fetch"


class TestInvalidation:
    """Change events recompute the affected reports."""

    @pytest.mark.asyncio
    async def test_new_payment_updates_trend(self, service, gateway):
        await service.collection_trend()

        payment = {"id": "p-8", "user_scheme_id": "us-1", "customer_id": "c-1", "staff_id": "staff-1",
                   "amount": 700, "payment_method": "upi", "payment_date": "2025-01-04", "status": "completed"}
        gateway.insert("payments", payment)
        service.notifier.publish("payments", payment)
        await settle(service)

        trend = {p.date: p.total for p in await service.collection_trend()}
        assert trend["2025-01-04"] == Decimal("700")

    @pytest.mark.asyncio
    async def test_withdrawal_processed_updates_metal_grams(self, service, gateway):
        assert (await service.withdrawals_roster())[0].metal_grams == Decimal("10")

        gateway.update("withdrawals", "w-1", status="processed", final_grams=9.8, final_amount=62720,
                       processed_at="2025-01-05T11:00:00+00:00")
        service.notifier.publish("withdrawals", {"id": "w-1"})
        await settle(service)

        assert (await service.withdrawals_roster())[0].metal_grams == Decimal("9.8")

    @pytest.mark.asyncio
    async def test_unrelated_change_leaves_report_alone(self, service, gateway):
        await service.market_rates()
        reads = len(gateway.reads)

        service.notifier.publish("payments")
        await settle(service)

        await service.market_rates()
        assert len(gateway.reads) == reads

    @pytest.mark.asyncio
    async def test_staff_detail_invalidated_only_for_matching_staff(self, service):
        await service.staff_detail("staff-1")
        await service.staff_detail("staff-2")

        service.notifier.publish("payments", {"id": "p-9", "staff_id": "staff-1"})
        await settle(service)

        assert service.cache.stats()["staff_detail"]["invalidations"] == 1
        assert service.cache.stats()["staff_detail"]["refreshes"] == 3

    @pytest.mark.asyncio
    async def test_customer_profile_change_refreshes_staff_detail(self, service, gateway):
        await service.staff_detail("staff-1")

        gateway.update("profiles", "pc-1", name="Anita Menon")
        service.notifier.publish("profiles", {"id": "pc-1", "role": "customer", "name": "Anita Menon"})
        await settle(service)

        detail = await service.staff_detail("staff-1")
        assert [c.name for c in detail.assigned_customers_list] == ["Anita Menon", "Babu Rao"]
        assert detail.recent_payments[0].customer_name == "Anita Menon"

    @pytest.mark.asyncio
    async def test_customer_profile_event_invalidates_every_staff_detail(self, service):
        await service.staff_detail("staff-1")
        await service.staff_detail("staff-2")

        service.notifier.publish("profiles", {"id": "pc-2", "role": "customer"})
        await settle(service)

        assert service.cache.stats()["staff_detail"]["invalidations"] == 2

    @pytest.mark.asyncio
    async def test_staff_profile_event_invalidates_only_that_staff(self, service, gateway):
        await service.staff_detail("staff-1")
        await service.staff_detail("staff-2")

        gateway.update("profiles", "staff-2", name="Sita Iyer")
        service.notifier.publish("profiles", {"id": "staff-2", "role": "staff"})
        await settle(service)

        assert service.cache.stats()["staff_detail"]["invalidations"] == 1
        assert (await service.staff_detail("staff-2")).name == "Sita Iyer"

    @pytest.mark.asyncio
    async def test_change_without_record_invalidates_every_staff_detail(self, service):
        await service.staff_detail("staff-1")
        await service.staff_detail("staff-2")

        service.notifier.publish("staff_assignments")
        await settle(service)

        assert service.cache.stats()["staff_detail"]["invalidations"] == 2

    @pytest.mark.asyncio
    async def test_aclose_stops_background_work(self, gateway):
        service = ReportService(gateway, today=lambda: AS_OF)
        await service.start()
        await service.aclose()
        assert not service.notifier.running


class TestDegradedResults:
    """Gateway failures never reach the caller."""

    @pytest.mark.asyncio
    async def test_first_failure_returns_empty_report(self, service, gateway):
        gateway.set_unavailable(["payments"])

        metrics = await service.dashboard_metrics()
        assert metrics == DashboardMetrics()

        (kind, _), error = next(iter(service.last_errors.items()))
        assert kind == "dashboard_metrics"
        assert error.category == ErrorCategory.GATEWAY_UNAVAILABLE
        assert error.pipeline_phase == "fetch"

    @pytest.mark.asyncio
    async def test_recovery_clears_recorded_error(self, service, gateway):
        gateway.set_unavailable(["market_rates"])
        assert await service.market_rates() == MarketRates()
        assert service.last_errors

        gateway.set_available()
        rates = await service.market_rates()
        assert rates.current is not None
        assert service.last_errors == {}

    @pytest.mark.asyncio
    async def test_failure_after_success_serves_last_value(self, service, gateway):
        first = await service.staff_roster()

        gateway.set_unavailable()
        again = await service.staff_roster(force_refresh=True)

        assert again == first
        assert len(service.last_errors) == 1

    @pytest.mark.asyncio
    async def test_failed_unknown_staff_detail_is_none(self, service, gateway):
        gateway.set_unavailable()
        assert await service.staff_detail("staff-1") is None
        assert service.cache.peek("staff_detail", StaffParams(staff_id="staff-1", as_of=AS_OF)).has_value is False

    @pytest.mark.asyncio
    async def test_health_reports_degraded_kinds(self, service, gateway):
        gateway.set_unavailable(["withdrawals"])
        assert await service.withdrawals_roster() == []

        health = service.health()
        assert health["errors"][0]["report"] == "withdrawals_roster"
        assert health["errors"][0]["category"] == "GATEWAY_UNAVAILABLE"
        assert health["cache"]["withdrawals_roster"]["failures"] == 1
