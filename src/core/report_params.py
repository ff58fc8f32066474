"""
Report Parameter Schemas

Pydantic models for validating caller-supplied report parameters before any
fetch happens. Each model also renders the stable string used as the cache
key suffix, so two requests with equal parameters share one cache entry.
"""
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.core.error_taxonomy import InvalidReportParameters


def inclusive_days(start: date, end: date) -> int:
    """Number of calendar days from start to end, both ends included."""
    return (end - start).days + 1


class ReportParams(BaseModel):
    """Base for all report parameter models."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    def cache_key(self) -> str:
        """Stable, order-independent key for this parameter set."""
        return self.model_dump_json(exclude_none=True)


class NoParams(ReportParams):
    """Reports that read everything and depend on no reference date."""


class AsOfParams(ReportParams):
    """Reports anchored on an explicit reference date ("today")."""
    as_of: date


class DateRangeParams(ReportParams):
    """Inclusive calendar date range."""
    start: date
    end: date

    @model_validator(mode="after")
    def validate_order(self):
        if self.start > self.end:
            raise ValueError(f"start ({self.start}) must be on or before end ({self.end})")
        return self

    @property
    def days(self) -> int:
        """Number of calendar days in the range, both ends included."""
        return inclusive_days(self.start, self.end)


class StaffParams(AsOfParams):
    """Single-staff report anchored on a reference date."""
    staff_id: str = Field(..., min_length=1)

    @field_validator("staff_id")
    @classmethod
    def strip_staff_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("staff_id must not be blank")
        return v


class CustomerPaymentParams(DateRangeParams):
    """Customer payment report range with an optional name/phone search."""
    search: Optional[str] = None

    @field_validator("search")
    @classmethod
    def normalize_search(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


def build_params(model: type, **values) -> ReportParams:
    """
    Validate raw values into a parameter model.

    Raises:
        InvalidReportParameters: if validation fails
    """
    try:
        return model(**values)
    except ValidationError as e:
        raise InvalidReportParameters(
            f"Invalid parameters for {model.__name__}: {e.errors(include_url=False)}",
            context={"values": {k: str(v) for k, v in values.items()}},
        ) from e
