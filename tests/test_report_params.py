"""
Tests for Report Parameter Schemas
"""
import pytest
from datetime import date
from pydantic import ValidationError

from src.core.error_taxonomy import ErrorCategory, InvalidReportParameters
from src.core.report_params import (
    AsOfParams,
    CustomerPaymentParams,
    DateRangeParams,
    NoParams,
    StaffParams,
    build_params,
    inclusive_days,
)


class TestValidation:
    """Tests for parameter validation."""

    def test_iso_strings_are_coerced(self):
        params = build_params(DateRangeParams, start="2025-01-01", end="2025-01-05")
        assert params.start == date(2025, 1, 1)
        assert params.days == 5

    def test_single_day_range(self):
        params = build_params(DateRangeParams, start=date(2025, 1, 5), end=date(2025, 1, 5))
        assert params.days == 1

    def test_inclusive_days_across_month_end(self):
        assert inclusive_days(date(2025, 1, 30), date(2025, 2, 2)) == 4

    def test_start_after_end_rejected(self):
        with pytest.raises(InvalidReportParameters) as exc_info:
            build_params(DateRangeParams, start=date(2025, 1, 6), end=date(2025, 1, 5))

        error = exc_info.value.classify()
        assert error.category == ErrorCategory.INVALID_PARAMETERS
        assert error.recoverable is False
        assert error.context["values"]["start"] == "2025-01-06"

    def test_staff_id_is_stripped(self):
        params = build_params(StaffParams, staff_id="  staff-1 ", as_of=date(2025, 1, 5))
        assert params.staff_id == "staff-1"

    @pytest.mark.parametrize("staff_id", ["", "   "])
    def test_blank_staff_id_rejected(self, staff_id):
        with pytest.raises(InvalidReportParameters):
            build_params(StaffParams, staff_id=staff_id, as_of=date(2025, 1, 5))

    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidReportParameters):
            build_params(AsOfParams, as_of=date(2025, 1, 5), staff="x")

    def test_params_are_immutable(self):
        params = AsOfParams(as_of=date(2025, 1, 5))
        with pytest.raises(ValidationError):
            params.as_of = date(2025, 1, 6)


class TestCacheKeys:
    """Tests for cache key stability."""

    def test_equal_params_share_a_key(self):
        first = CustomerPaymentParams(start=date(2025, 1, 1), end=date(2025, 1, 5), search="anita")
        second = build_params(CustomerPaymentParams, end="2025-01-05", search=" anita ", start="2025-01-01")
        assert first.cache_key() == second.cache_key()

    def test_blank_search_is_no_search(self):
        blank = CustomerPaymentParams(start=date(2025, 1, 1), end=date(2025, 1, 5), search="   ")
        none = CustomerPaymentParams(start=date(2025, 1, 1), end=date(2025, 1, 5))
        assert blank.search is None
        assert blank.cache_key() == none.cache_key()

    def test_different_dates_differ(self):
        assert AsOfParams(as_of=date(2025, 1, 5)).cache_key() != AsOfParams(as_of=date(2025, 1, 6)).cache_key()

    def test_no_params_key(self):
        assert NoParams().cache_key() == "{}"
