"""
Tests for the In-Memory Record Store Gateway
"""
import pytest
from datetime import date

from src.core.error_taxonomy import GatewayError
from src.data.gateway import COLLECTIONS, Filter, InMemoryGateway
from src.tools.mock_data_generator import generate_mock_ledger
from tests.sample_ledger import sample_ledger


@pytest.fixture
def gateway():
    return InMemoryGateway(sample_ledger())


class TestFilters:
    """Tests for filter matching."""

    def test_eq_and_in(self):
        row = {"status": "completed", "payment_method": "upi"}
        assert Filter.eq("status", "completed").matches(row)
        assert not Filter.eq("status", "pending").matches(row)
        assert Filter.isin("payment_method", ["cash", "upi"]).matches(row)

    def test_dates_compare_with_iso_strings(self):
        row = {"payment_date": "2025-01-05"}
        assert Filter.gte("payment_date", date(2025, 1, 5)).matches(row)
        assert Filter.lte("payment_date", date(2025, 1, 5)).matches(row)
        assert not Filter.lt("payment_date", date(2025, 1, 5)).matches(row)

    def test_range_never_matches_missing_value(self):
        assert not Filter.gte("processed_at", "2025-01-01").matches({"processed_at": None})
        assert not Filter.lt("processed_at", "2025-01-01").matches({})


class TestReads:
    """Tests for select and count."""

    @pytest.mark.asyncio
    async def test_select_with_filters(self, gateway):
        rows = await gateway.select("payments", [Filter.eq("status", "completed"),
                                                 Filter.eq("payment_date", date(2025, 1, 5))])
        assert [r["id"] for r in rows] == ["p-1", "p-2", "p-3"]

    @pytest.mark.asyncio
    async def test_order_puts_missing_values_last(self, gateway):
        rows = await gateway.select("withdrawals", order_by="processed_at", descending=True)
        assert [r["id"] for r in rows][:2] == ["w-2", "w-3"]
        assert {r["id"] for r in rows[2:]} == {"w-1", "w-4"}

    @pytest.mark.asyncio
    async def test_limit(self, gateway):
        rows = await gateway.select("market_rates", [Filter.eq("asset_type", "gold")],
                                    order_by="rate_date", descending=True, limit=1)
        assert [r["id"] for r in rows] == ["r-2"]

    @pytest.mark.asyncio
    async def test_count(self, gateway):
        assert await gateway.count("customers", [Filter.eq("active", True)]) == 2
        assert gateway.reads == [("count", "customers")]

    @pytest.mark.asyncio
    async def test_rows_are_copies(self, gateway):
        rows = await gateway.select("customers")
        rows[0]["active"] = False
        assert await gateway.count("customers", [Filter.eq("active", True)]) == 2

    @pytest.mark.asyncio
    async def test_insert_and_update(self, gateway):
        gateway.insert("customers", {"id": "c-4", "profile_id": "pc-4", "active": True})
        assert gateway.update("customers", "c-1", active=False)
        assert not gateway.update("customers", "c-missing", active=False)
        assert await gateway.count("customers", [Filter.eq("active", True)]) == 2

    def test_unknown_collection(self, gateway):
        with pytest.raises(ValueError):
            gateway.insert("audit_log", {"id": 1})


class TestOutages:
    """Tests for simulated store failures."""

    @pytest.mark.asyncio
    async def test_unavailable_collection_raises(self, gateway):
        gateway.set_unavailable(["payments"])
        with pytest.raises(GatewayError) as exc_info:
            await gateway.select("payments")
        assert exc_info.value.collection == "payments"

        assert len(await gateway.select("customers")) == 3

    @pytest.mark.asyncio
    async def test_whole_store_outage_and_recovery(self, gateway):
        gateway.set_unavailable()
        with pytest.raises(GatewayError):
            await gateway.count("schemes")

        gateway.set_available()
        assert await gateway.count("schemes") == 2


class TestMockLedger:
    """Tests for the generated demo ledger."""

    def test_same_seed_same_ledger(self):
        as_of = date(2025, 3, 31)
        assert generate_mock_ledger(as_of=as_of, seed=7) == generate_mock_ledger(as_of=as_of, seed=7)

    def test_covers_every_collection(self):
        ledger = generate_mock_ledger(as_of=date(2025, 3, 31))
        assert set(ledger) == set(COLLECTIONS)
        assert all(ledger[name] for name in COLLECTIONS)

    def test_payments_fall_inside_history(self):
        ledger = generate_mock_ledger(as_of=date(2025, 3, 31), days=10)
        dates = {p["payment_date"] for p in ledger["payments"]}
        assert min(dates) >= "2025-03-22"
        assert max(dates) <= "2025-03-31"
