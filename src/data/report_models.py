"""
Report Shapes

Dataclasses returned by the aggregators. Money and grams stay Decimal inside
the objects; `to_dict()` renders the camelCase JSON shape the admin UI reads,
with Decimal converted to float only at that boundary.
"""
from dataclasses import dataclass, field, fields, is_dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from src.tools.money import ZERO


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def to_plain(value: Any) -> Any:
    """Recursively convert report values into JSON-friendly primitives."""
    if isinstance(value, Decimal):
        return float(value)
    if is_dataclass(value) and not isinstance(value, type):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


class ReportModel:
    """Mixin giving dataclass report shapes a camelCase `to_dict`."""

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): to_plain(getattr(self, f.name)) for f in fields(self)}


# ==================== DASHBOARD ====================

@dataclass
class DashboardMetrics(ReportModel):
    total_customers: int = 0
    active_schemes: int = 0
    today_collections: Decimal = ZERO
    total_collections: Decimal = ZERO
    today_withdrawals: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    pending_withdrawals_today: int = 0


@dataclass
class TrendPoint(ReportModel):
    date: str
    total: Decimal


@dataclass
class MethodBucket(ReportModel):
    method_key: str
    method: str  # Display label
    count: int = 0
    total: Decimal = ZERO


# ==================== STAFF ====================

@dataclass
class StaffSummary(ReportModel):
    id: str
    name: str
    phone: str
    email: Optional[str]
    active: bool
    staff_code: str
    staff_type: str
    daily_target: Decimal
    is_active: bool
    assigned_customers: int = 0
    today_collections: Decimal = ZERO


@dataclass
class AssignedCustomer(ReportModel):
    id: Optional[str]
    name: str
    phone: str
    route: str
    assigned_date: Optional[str]


@dataclass
class RecentPayment(ReportModel):
    id: Optional[str]
    customer_name: str
    scheme_name: str
    amount: Decimal
    date: Optional[str]


@dataclass
class StaffDetail(ReportModel):
    id: str
    name: str
    phone: str
    email: Optional[str]
    active: bool
    staff_code: str
    staff_type: str
    daily_target: Decimal
    is_active: bool
    today_collections: Decimal = ZERO
    total_collections: Decimal = ZERO
    assigned_customers: int = 0
    customers_visited_today: int = 0
    assigned_customers_list: List[AssignedCustomer] = field(default_factory=list)
    recent_payments: List[RecentPayment] = field(default_factory=list)


# ==================== SCHEMES ====================

@dataclass
class SchemeSummary(ReportModel):
    id: str
    name: str
    asset_type: str
    min_amount: Decimal
    max_amount: Decimal
    duration_days: int
    is_active: bool
    active_enrollments: int = 0
    completed_enrollments: int = 0
    total_collected: Decimal = ZERO


@dataclass
class SchemePerformance(ReportModel):
    scheme_id: str
    scheme_name: str
    asset_type: str
    total_enrollments: int = 0
    active_enrollments: int = 0
    completed_enrollments: int = 0
    total_collected: Decimal = ZERO
    total_metal_grams: Decimal = ZERO
    avg_per_enrollment: int = 0


# ==================== MARKET RATES ====================

@dataclass
class RateSnapshot(ReportModel):
    rate_date: str
    source: str
    gold_rate: Optional[Decimal] = None
    silver_rate: Optional[Decimal] = None


@dataclass
class MarketRates(ReportModel):
    current: Optional[RateSnapshot] = None
    history: List[RateSnapshot] = field(default_factory=list)


# ==================== WITHDRAWALS ====================

@dataclass
class WithdrawalRow(ReportModel):
    id: Optional[str]
    customer_name: str
    customer_phone: str
    scheme_name: str
    asset_type: str
    metal_grams: Decimal
    status: Optional[str]
    created_at: Optional[str]
    requested_amount: Decimal
    final_amount: Decimal


# ==================== CASH FLOW SERIES ====================

@dataclass
class InflowDay(ReportModel):
    date: str
    payment_count: int = 0
    total_amount: Decimal = ZERO
    cash_total: Decimal = ZERO
    upi_total: Decimal = ZERO
    bank_total: Decimal = ZERO


@dataclass
class InflowSeries(ReportModel):
    daily: List[InflowDay] = field(default_factory=list)
    total_payments: int = 0
    total_amount: Decimal = ZERO
    cash_total: Decimal = ZERO
    upi_total: Decimal = ZERO
    bank_total: Decimal = ZERO


@dataclass
class OutflowDay(ReportModel):
    date: str
    withdrawal_count: int = 0
    total_amount: Decimal = ZERO


@dataclass
class OutflowSeries(ReportModel):
    daily: List[OutflowDay] = field(default_factory=list)
    total_withdrawals: int = 0
    total_amount: Decimal = ZERO


@dataclass
class CashFlowDay(ReportModel):
    date: str
    inflow: Decimal = ZERO
    outflow: Decimal = ZERO
    net_cash_flow: Decimal = ZERO


@dataclass
class CashFlowSeries(ReportModel):
    daily: List[CashFlowDay] = field(default_factory=list)
    total_inflow: Decimal = ZERO
    total_outflow: Decimal = ZERO
    net_cash_flow: Decimal = ZERO
    avg_daily_net: Decimal = ZERO
    positive_days: int = 0
    negative_days: int = 0


# ==================== DAILY REPORT ====================

@dataclass
class DailyStaffBreakdown(ReportModel):
    staff_id: str
    staff_name: str
    staff_code: str
    payment_count: int = 0
    total_collected: Decimal = ZERO
    customers_visited: int = 0


@dataclass
class DailyPaymentRow(ReportModel):
    id: Optional[str]
    customer_name: str
    customer_phone: str
    staff_name: str
    payment_method: Optional[str]
    amount: Decimal


@dataclass
class DailyReport(ReportModel):
    date: str
    total_payments: int = 0
    total_amount: Decimal = ZERO
    unique_customers: int = 0
    active_staff: int = 0
    average_payment: Decimal = ZERO
    by_method: List[MethodBucket] = field(default_factory=list)
    by_staff: List[DailyStaffBreakdown] = field(default_factory=list)
    payments: List[DailyPaymentRow] = field(default_factory=list)


# ==================== PERFORMANCE REPORTS ====================

@dataclass
class StaffPerformance(ReportModel):
    staff_id: str
    staff_name: str
    staff_code: str
    daily_target: Decimal
    total_payments: int = 0
    total_collected: Decimal = ZERO
    customers_visited: int = 0
    assigned_customers: int = 0
    avg_daily_collection: Decimal = ZERO
    target_achievement: int = 0


@dataclass
class CustomerPaymentRow(ReportModel):
    customer_id: Optional[str]
    user_scheme_id: Optional[str]
    customer_name: str
    phone: str
    scheme_name: str
    total_payments: int = 0
    total_paid: Decimal = ZERO
    metal_grams: Decimal = ZERO
    # Reserved: the scheme-based due calculation is not defined yet; always 0
    due_amount: Decimal = ZERO
    last_payment_date: str = ""


# ==================== ACCESS CONTROL ====================

@dataclass
class AccessEntry(ReportModel):
    phone: str
    name: str
    role: str
    is_active: bool
    created_at: Optional[str]
    added_by: Optional[str]


@dataclass
class AccessControlRoster(ReportModel):
    entries: List[AccessEntry] = field(default_factory=list)
    staff_count: int = 0
    customer_count: int = 0
    active_count: int = 0
