"""
Report Aggregators

Deterministic, side-effect free computations from raw ledger rows to report
shapes. Every function takes its reference date or range explicitly; nothing
here reads the clock or the gateway.

Rows are plain dicts as returned by the gateway. Functions re-check status
fields themselves, so passing an unfiltered collection is always safe.

Joins are done by id in memory: rows are indexed once per call and missing
related records fall back to documented defaults ('Unknown', 'N/A', 0)
instead of failing the report.
"""
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from src.core.report_params import inclusive_days
from src.data.report_models import (
    AccessControlRoster,
    AccessEntry,
    AssignedCustomer,
    CashFlowDay,
    CashFlowSeries,
    CustomerPaymentRow,
    DailyPaymentRow,
    DailyReport,
    DailyStaffBreakdown,
    DashboardMetrics,
    InflowDay,
    InflowSeries,
    MarketRates,
    MethodBucket,
    OutflowDay,
    OutflowSeries,
    RateSnapshot,
    RecentPayment,
    SchemePerformance,
    SchemeSummary,
    StaffDetail,
    StaffPerformance,
    StaffSummary,
    TrendPoint,
    WithdrawalRow,
)
from src.tools.money import ZERO, percent_of, round_half_up, safe_divide, sum_decimal, to_decimal

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

METHOD_LABELS = {
    "cash": "Cash",
    "upi": "UPI",
    "bank_transfer": "Bank Transfer",
}


# ==================== ROW HELPERS ====================

def date_key(value: Any) -> Optional[str]:
    """
    ISO `YYYY-MM-DD` for a date-ish value.

    Timestamps with an offset are bucketed by their UTC calendar date, the
    same basis the store uses when it renders `processed_at`.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text[:10] if len(text) >= 10 else None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def is_completed(payment: Row) -> bool:
    return payment.get("status") == "completed"


def is_processed(withdrawal: Row) -> bool:
    return withdrawal.get("status") == "processed"


def completed_payments(payments: Iterable[Row]) -> List[Row]:
    return [p for p in payments if is_completed(p)]


def index_by(rows: Iterable[Row], key: str = "id") -> Dict[Any, Row]:
    """Index rows by a field; later rows win on duplicate keys."""
    return {r.get(key): r for r in rows if r.get(key) is not None}


def method_label(method: Optional[str]) -> str:
    if not method:
        return "Unknown"
    return METHOD_LABELS.get(method, method)


def _in_range(day: Optional[str], start: date, end: date) -> bool:
    return day is not None and start.isoformat() <= day <= end.isoformat()


def _text(value: Any, default: str) -> str:
    return str(value) if value not in (None, "") else default


class _CustomerDirectory:
    """customer id -> profile (name, phone) join used by several reports."""

    def __init__(self, customers: Iterable[Row], profiles: Iterable[Row]):
        self._customers = index_by(customers)
        self._profiles = index_by(profiles)

    def profile(self, customer_id: Any) -> Row:
        customer = self._customers.get(customer_id)
        if customer is None:
            return {}
        return self._profiles.get(customer.get("profile_id"), {})

    def name(self, customer_id: Any, default: str = "Unknown") -> str:
        return _text(self.profile(customer_id).get("name"), default)

    def phone(self, customer_id: Any, default: str = "N/A") -> str:
        return _text(self.profile(customer_id).get("phone"), default)


class _SchemeDirectory:
    """enrollment id -> scheme join used by several reports."""

    def __init__(self, user_schemes: Iterable[Row], schemes: Iterable[Row]):
        self._enrollments = index_by(user_schemes)
        self._schemes = index_by(schemes)

    def enrollment(self, user_scheme_id: Any) -> Row:
        return self._enrollments.get(user_scheme_id, {})

    def scheme(self, user_scheme_id: Any) -> Row:
        return self._schemes.get(self.enrollment(user_scheme_id).get("scheme_id"), {})


def _metadata_fields(metadata: Optional[Row], code_default: str = "") -> Dict[str, Any]:
    metadata = metadata or {}
    return {
        "staff_code": _text(metadata.get("staff_code"), code_default),
        "staff_type": _text(metadata.get("staff_type"), "collection"),
        "daily_target": to_decimal(metadata.get("daily_target_amount")),
        "is_active": metadata.get("is_active") is not False,
    }


# ==================== DASHBOARD ====================

def compute_dashboard_metrics(
    active_customers: int,
    active_enrollments: int,
    payments: Sequence[Row],
    withdrawals: Sequence[Row],
    as_of: date,
) -> DashboardMetrics:
    """
    Headline numbers for the admin dashboard.

    "Today" is `as_of`: payments by `payment_date`, processed withdrawals by
    the date of `processed_at`, pending withdrawals by the date of `created_at`.
    """
    today = as_of.isoformat()
    completed = completed_payments(payments)
    processed = [w for w in withdrawals if is_processed(w)]

    return DashboardMetrics(
        total_customers=active_customers,
        active_schemes=active_enrollments,
        today_collections=sum_decimal(
            p.get("amount") for p in completed if date_key(p.get("payment_date")) == today
        ),
        total_collections=sum_decimal(p.get("amount") for p in completed),
        today_withdrawals=sum_decimal(
            w.get("final_amount") for w in processed if date_key(w.get("processed_at")) == today
        ),
        total_withdrawals=sum_decimal(w.get("final_amount") for w in processed),
        pending_withdrawals_today=sum(
            1 for w in withdrawals
            if w.get("status") == "pending" and date_key(w.get("created_at")) == today
        ),
    )


def compute_collection_trend(
    payments: Sequence[Row],
    as_of: date,
    days: int = 30,
) -> List[TrendPoint]:
    """
    Daily completed-payment totals for the trailing window ending at `as_of`.

    The series is sparse: days without payments are omitted.
    """
    start = as_of - timedelta(days=days)
    totals: Dict[str, Decimal] = defaultdict(Decimal)
    for p in completed_payments(payments):
        day = date_key(p.get("payment_date"))
        if _in_range(day, start, as_of):
            totals[day] += to_decimal(p.get("amount"))

    return [TrendPoint(date=day, total=total) for day, total in sorted(totals.items())]


def compute_payment_method_distribution(payments: Sequence[Row]) -> List[MethodBucket]:
    """Completed payments grouped by method: count and total per method."""
    buckets: Dict[str, MethodBucket] = {}
    for p in completed_payments(payments):
        key = p.get("payment_method") or "unknown"
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = MethodBucket(method_key=key, method=method_label(p.get("payment_method")))
        bucket.count += 1
        bucket.total += to_decimal(p.get("amount"))
    return list(buckets.values())


# ==================== STAFF ====================

def group_assignment_counts(assignments: Iterable[Row]) -> Dict[str, int]:
    """Active assignment rows per staff id."""
    counts: Dict[str, int] = defaultdict(int)
    for a in assignments:
        if a.get("is_active") and a.get("staff_id") is not None:
            counts[a["staff_id"]] += 1
    return dict(counts)


def compute_staff_roster(
    staff_profiles: Sequence[Row],
    staff_metadata: Sequence[Row],
    assignment_counts: Mapping[str, int],
    payments: Sequence[Row],
    as_of: date,
) -> List[StaffSummary]:
    """
    Every staff profile with its metadata, active assignment count and
    today's completed collections.
    """
    today = as_of.isoformat()
    metadata_by_staff = index_by(staff_metadata, "staff_id")

    today_by_staff: Dict[str, Decimal] = defaultdict(Decimal)
    for p in completed_payments(payments):
        if p.get("staff_id") is not None and date_key(p.get("payment_date")) == today:
            today_by_staff[p["staff_id"]] += to_decimal(p.get("amount"))

    roster = []
    for profile in staff_profiles:
        if profile.get("role", "staff") != "staff":
            continue
        staff_id = profile.get("id")
        roster.append(StaffSummary(
            id=staff_id,
            name=_text(profile.get("name"), "Unknown"),
            phone=_text(profile.get("phone"), "N/A"),
            email=profile.get("email"),
            active=bool(profile.get("active")),
            **_metadata_fields(metadata_by_staff.get(staff_id)),
            assigned_customers=assignment_counts.get(staff_id, 0),
            today_collections=today_by_staff.get(staff_id, ZERO),
        ))
    return roster


def compute_staff_detail(
    profile: Optional[Row],
    metadata: Optional[Row],
    payments: Sequence[Row],
    assignments: Sequence[Row],
    customers: Sequence[Row],
    customer_profiles: Sequence[Row],
    user_schemes: Sequence[Row],
    schemes: Sequence[Row],
    as_of: date,
    recent_limit: int = 10,
) -> Optional[StaffDetail]:
    """
    Deep view of one staff member. `payments` and `assignments` are that
    staff member's rows. Returns None when the profile does not exist.
    """
    if not profile:
        return None

    staff_id = profile.get("id")
    today = as_of.isoformat()
    completed = [p for p in completed_payments(payments) if p.get("staff_id") == staff_id]
    todays = [p for p in completed if date_key(p.get("payment_date")) == today]
    active_assignments = [
        a for a in assignments if a.get("is_active") and a.get("staff_id") == staff_id
    ]

    directory = _CustomerDirectory(customers, customer_profiles)
    scheme_directory = _SchemeDirectory(user_schemes, schemes)

    assigned_list = [
        AssignedCustomer(
            id=a.get("customer_id"),
            name=directory.name(a.get("customer_id"), default="N/A"),
            phone=directory.phone(a.get("customer_id")),
            route="N/A",
            assigned_date=date_key(a.get("assigned_date")),
        )
        for a in active_assignments
    ]

    # Stable sort keeps store order among payments on the same day
    recent = sorted(completed, key=lambda p: date_key(p.get("payment_date")) or "", reverse=True)
    recent_payments = [
        RecentPayment(
            id=p.get("id"),
            customer_name=directory.name(p.get("customer_id")),
            scheme_name=_text(scheme_directory.scheme(p.get("user_scheme_id")).get("name"), "Unknown"),
            amount=to_decimal(p.get("amount")),
            date=date_key(p.get("payment_date")),
        )
        for p in recent[:recent_limit]
    ]

    return StaffDetail(
        id=staff_id,
        name=_text(profile.get("name"), "Unknown"),
        phone=_text(profile.get("phone"), "N/A"),
        email=profile.get("email"),
        active=bool(profile.get("active")),
        **_metadata_fields(metadata),
        today_collections=sum_decimal(p.get("amount") for p in todays),
        total_collections=sum_decimal(p.get("amount") for p in completed),
        assigned_customers=len(active_assignments),
        customers_visited_today=len({p.get("customer_id") for p in todays}),
        assigned_customers_list=assigned_list,
        recent_payments=recent_payments,
    )


def compute_staff_performance(
    staff_profiles: Sequence[Row],
    staff_metadata: Sequence[Row],
    payments: Sequence[Row],
    assignment_counts: Mapping[str, int],
    start: date,
    end: date,
) -> List[StaffPerformance]:
    """
    Collections per staff member over an inclusive date range.

    target achievement = (total / days in range) / daily target * 100,
    rounded half-up to an integer; 0 when the target is 0.
    """
    days = inclusive_days(start, end)
    metadata_by_staff = index_by(staff_metadata, "staff_id")

    by_staff: Dict[str, List[Row]] = defaultdict(list)
    for p in completed_payments(payments):
        if p.get("staff_id") is not None and _in_range(date_key(p.get("payment_date")), start, end):
            by_staff[p["staff_id"]].append(p)

    report = []
    for profile in staff_profiles:
        if profile.get("role", "staff") != "staff":
            continue
        staff_id = profile.get("id")
        metadata = _metadata_fields(metadata_by_staff.get(staff_id), code_default="N/A")
        rows = by_staff.get(staff_id, [])
        total = sum_decimal(p.get("amount") for p in rows)
        avg_daily = safe_divide(total, days) or ZERO

        report.append(StaffPerformance(
            staff_id=staff_id,
            staff_name=_text(profile.get("name"), "Unknown"),
            staff_code=metadata["staff_code"],
            daily_target=metadata["daily_target"],
            total_payments=len(rows),
            total_collected=total,
            customers_visited=len({p.get("customer_id") for p in rows}),
            assigned_customers=assignment_counts.get(staff_id, 0),
            avg_daily_collection=round_half_up(avg_daily, 2),
            target_achievement=percent_of(avg_daily, metadata["daily_target"]),
        ))
    return report


# ==================== SCHEMES ====================

def _enrollments_by_scheme(user_schemes: Iterable[Row]) -> Dict[Any, List[Row]]:
    grouped: Dict[Any, List[Row]] = defaultdict(list)
    for us in user_schemes:
        grouped[us.get("scheme_id")].append(us)
    return grouped


def _collected_by_enrollment(payments: Iterable[Row]) -> Dict[Any, Decimal]:
    totals: Dict[Any, Decimal] = defaultdict(Decimal)
    for p in completed_payments(payments):
        totals[p.get("user_scheme_id")] += to_decimal(p.get("amount"))
    return totals


def compute_scheme_roster(
    schemes: Sequence[Row],
    user_schemes: Sequence[Row],
    payments: Sequence[Row],
) -> List[SchemeSummary]:
    """
    Schemes with enrollment counts and total collected.

    Collected is resolved in two steps: the scheme's enrollment ids, then the
    completed payments against those ids.
    """
    enrollments = _enrollments_by_scheme(user_schemes)
    collected = _collected_by_enrollment(payments)

    roster = []
    for scheme in schemes:
        rows = enrollments.get(scheme.get("id"), [])
        enrollment_ids = {us.get("id") for us in rows}
        roster.append(SchemeSummary(
            id=scheme.get("id"),
            name=_text(scheme.get("name"), "Unknown"),
            asset_type=_text(scheme.get("asset_type"), "gold"),
            min_amount=to_decimal(scheme.get("min_daily_amount")),
            max_amount=to_decimal(scheme.get("max_daily_amount")),
            duration_days=int(scheme.get("duration_months") or 0) * 30,
            is_active=bool(scheme.get("active")),
            active_enrollments=sum(1 for us in rows if us.get("status") == "active"),
            completed_enrollments=sum(1 for us in rows if us.get("status") == "completed"),
            total_collected=sum((collected.get(i, ZERO) for i in enrollment_ids), ZERO),
        ))
    return roster


def compute_scheme_performance(
    schemes: Sequence[Row],
    user_schemes: Sequence[Row],
    payments: Sequence[Row],
) -> List[SchemePerformance]:
    """Per scheme: enrollment counts by status, collections, metal and average per enrollment."""
    enrollments = _enrollments_by_scheme(user_schemes)
    collected = _collected_by_enrollment(payments)

    report = []
    for scheme in schemes:
        rows = enrollments.get(scheme.get("id"), [])
        total_collected = sum((collected.get(us.get("id"), ZERO) for us in rows), ZERO)
        average = safe_divide(total_collected, len(rows)) or ZERO
        report.append(SchemePerformance(
            scheme_id=scheme.get("id"),
            scheme_name=_text(scheme.get("name"), "Unknown"),
            asset_type=_text(scheme.get("asset_type"), "gold"),
            total_enrollments=len(rows),
            active_enrollments=sum(1 for us in rows if us.get("status") == "active"),
            completed_enrollments=sum(1 for us in rows if us.get("status") == "completed"),
            total_collected=total_collected,
            total_metal_grams=sum_decimal(us.get("accumulated_metal_grams") for us in rows),
            avg_per_enrollment=int(round_half_up(average)),
        ))
    return report


# ==================== MARKET RATES ====================

def compute_market_rates(
    latest_rates: Sequence[Row],
    history_rates: Sequence[Row],
    as_of: date,
    history_days: int = 30,
) -> MarketRates:
    """
    Current gold/silver rate and a per-day history.

    Current combines the newest gold row and the newest silver row. History
    covers the trailing window, newest first, one entry per rate date with
    only the asset types that have a row that day.
    """
    newest: Dict[str, Row] = {}
    for rate in latest_rates:
        asset = rate.get("asset_type")
        day = date_key(rate.get("rate_date"))
        if asset not in ("gold", "silver") or day is None:
            continue
        if asset not in newest or day > date_key(newest[asset].get("rate_date")):
            newest[asset] = rate

    gold, silver = newest.get("gold"), newest.get("silver")
    current = None
    if gold or silver:
        current = RateSnapshot(
            rate_date=date_key((gold or silver).get("rate_date")),
            source=(gold or {}).get("source") or (silver or {}).get("source") or "manual",
            gold_rate=to_decimal(gold.get("price_per_gram")) if gold else None,
            silver_rate=to_decimal(silver.get("price_per_gram")) if silver else None,
        )

    start = as_of - timedelta(days=history_days)
    by_day: Dict[str, RateSnapshot] = {}
    for rate in history_rates:
        day = date_key(rate.get("rate_date"))
        if not _in_range(day, start, as_of):
            continue
        entry = by_day.get(day)
        if entry is None:
            entry = by_day[day] = RateSnapshot(rate_date=day, source=rate.get("source") or "manual")
        if rate.get("asset_type") == "gold":
            entry.gold_rate = to_decimal(rate.get("price_per_gram"))
        elif rate.get("asset_type") == "silver":
            entry.silver_rate = to_decimal(rate.get("price_per_gram"))

    history = [by_day[day] for day in sorted(by_day, reverse=True)]
    return MarketRates(current=current, history=history)


# ==================== WITHDRAWALS ====================

def withdrawal_metal_grams(withdrawal: Row) -> Decimal:
    """
    Grams shown for a withdrawal.

    Once processed with a final weight, the final weight is authoritative;
    otherwise the requested weight, falling back to the final weight.
    """
    final = to_decimal(withdrawal.get("final_grams"))
    if is_processed(withdrawal) and withdrawal.get("final_grams") is not None:
        return final
    requested = to_decimal(withdrawal.get("requested_grams"))
    return requested if requested else final


def compute_withdrawals_roster(
    withdrawals: Sequence[Row],
    customers: Sequence[Row],
    customer_profiles: Sequence[Row],
    user_schemes: Sequence[Row],
    schemes: Sequence[Row],
) -> List[WithdrawalRow]:
    """All withdrawals, newest first, joined to customer and scheme."""
    directory = _CustomerDirectory(customers, customer_profiles)
    scheme_directory = _SchemeDirectory(user_schemes, schemes)

    ordered = sorted(withdrawals, key=lambda w: str(w.get("created_at") or ""), reverse=True)
    roster = []
    for w in ordered:
        scheme = scheme_directory.scheme(w.get("user_scheme_id"))
        roster.append(WithdrawalRow(
            id=w.get("id"),
            customer_name=directory.name(w.get("customer_id"), default="N/A"),
            customer_phone=directory.phone(w.get("customer_id")),
            scheme_name=_text(scheme.get("name"), "N/A"),
            asset_type=_text(scheme.get("asset_type"), "gold"),
            metal_grams=withdrawal_metal_grams(w),
            status=w.get("status"),
            created_at=w.get("created_at") if w.get("created_at") is None else str(w.get("created_at")),
            requested_amount=to_decimal(w.get("requested_amount")),
            final_amount=to_decimal(w.get("final_amount")),
        ))
    return roster


# ==================== CASH FLOW SERIES ====================

def compute_inflow_series(payments: Sequence[Row], start: date, end: date) -> InflowSeries:
    """Completed payments bucketed by `payment_date`, split by method."""
    days: Dict[str, InflowDay] = {}
    for p in completed_payments(payments):
        day = date_key(p.get("payment_date"))
        if not _in_range(day, start, end):
            continue
        bucket = days.get(day)
        if bucket is None:
            bucket = days[day] = InflowDay(date=day)
        amount = to_decimal(p.get("amount"))
        bucket.payment_count += 1
        bucket.total_amount += amount
        method = p.get("payment_method")
        if method == "cash":
            bucket.cash_total += amount
        elif method == "upi":
            bucket.upi_total += amount
        elif method == "bank_transfer":
            bucket.bank_total += amount

    daily = [days[d] for d in sorted(days)]
    return InflowSeries(
        daily=daily,
        total_payments=sum(d.payment_count for d in daily),
        total_amount=sum((d.total_amount for d in daily), ZERO),
        cash_total=sum((d.cash_total for d in daily), ZERO),
        upi_total=sum((d.upi_total for d in daily), ZERO),
        bank_total=sum((d.bank_total for d in daily), ZERO),
    )


def compute_outflow_series(withdrawals: Sequence[Row], start: date, end: date) -> OutflowSeries:
    """
    Processed withdrawals bucketed by the date portion of `processed_at`.

    Withdrawals have no pure date field, so this basis differs from the
    inflow series on purpose.
    """
    days: Dict[str, OutflowDay] = {}
    for w in withdrawals:
        if not is_processed(w):
            continue
        day = date_key(w.get("processed_at"))
        if not _in_range(day, start, end):
            continue
        bucket = days.get(day)
        if bucket is None:
            bucket = days[day] = OutflowDay(date=day)
        bucket.withdrawal_count += 1
        bucket.total_amount += to_decimal(w.get("final_amount"))

    daily = [days[d] for d in sorted(days)]
    return OutflowSeries(
        daily=daily,
        total_withdrawals=sum(d.withdrawal_count for d in daily),
        total_amount=sum((d.total_amount for d in daily), ZERO),
    )


def merge_cash_flow(inflow: InflowSeries, outflow: OutflowSeries) -> CashFlowSeries:
    """Net cash flow over the union of both series' dates; a missing side counts as 0."""
    merged: Dict[str, CashFlowDay] = {}
    for day in inflow.daily:
        merged.setdefault(day.date, CashFlowDay(date=day.date)).inflow += day.total_amount
    for day in outflow.daily:
        merged.setdefault(day.date, CashFlowDay(date=day.date)).outflow += day.total_amount

    daily = []
    for d in sorted(merged):
        entry = merged[d]
        entry.net_cash_flow = entry.inflow - entry.outflow
        daily.append(entry)

    total_in = sum((d.inflow for d in daily), ZERO)
    total_out = sum((d.outflow for d in daily), ZERO)
    net = total_in - total_out
    return CashFlowSeries(
        daily=daily,
        total_inflow=total_in,
        total_outflow=total_out,
        net_cash_flow=net,
        avg_daily_net=round_half_up(safe_divide(net, len(daily)) or ZERO, 2),
        positive_days=sum(1 for d in daily if d.net_cash_flow > 0),
        negative_days=sum(1 for d in daily if d.net_cash_flow < 0),
    )


def compute_cash_flow_series(
    payments: Sequence[Row],
    withdrawals: Sequence[Row],
    start: date,
    end: date,
) -> CashFlowSeries:
    return merge_cash_flow(
        compute_inflow_series(payments, start, end),
        compute_outflow_series(withdrawals, start, end),
    )


# ==================== DAILY REPORT ====================

def compute_daily_report(
    payments: Sequence[Row],
    customers: Sequence[Row],
    profiles: Sequence[Row],
    staff_metadata: Sequence[Row],
    report_date: date,
) -> DailyReport:
    """
    Full breakdown of one calendar day's completed payments.

    `profiles` must cover both the paying customers' profiles and the
    collecting staff profiles.
    """
    day = report_date.isoformat()
    rows = [p for p in completed_payments(payments) if date_key(p.get("payment_date")) == day]
    if not rows:
        return DailyReport(date=day)

    directory = _CustomerDirectory(customers, profiles)
    staff_profiles = index_by(profiles)
    metadata_by_staff = index_by(staff_metadata, "staff_id")

    total = sum_decimal(p.get("amount") for p in rows)

    by_staff: Dict[str, DailyStaffBreakdown] = {}
    visited: Dict[str, set] = defaultdict(set)
    for p in rows:
        staff_id = p.get("staff_id")
        if not staff_id:
            continue
        entry = by_staff.get(staff_id)
        if entry is None:
            entry = by_staff[staff_id] = DailyStaffBreakdown(
                staff_id=staff_id,
                staff_name=_text(staff_profiles.get(staff_id, {}).get("name"), "Unknown"),
                staff_code=_text(metadata_by_staff.get(staff_id, {}).get("staff_code"), "N/A"),
            )
        entry.payment_count += 1
        entry.total_collected += to_decimal(p.get("amount"))
        visited[staff_id].add(p.get("customer_id"))
    for staff_id, entry in by_staff.items():
        entry.customers_visited = len(visited[staff_id])

    return DailyReport(
        date=day,
        total_payments=len(rows),
        total_amount=total,
        unique_customers=len({p.get("customer_id") for p in rows}),
        active_staff=len(by_staff),
        average_payment=round_half_up(total / len(rows), 2),
        by_method=compute_payment_method_distribution(rows),
        by_staff=list(by_staff.values()),
        payments=[
            DailyPaymentRow(
                id=p.get("id"),
                customer_name=directory.name(p.get("customer_id")),
                customer_phone=directory.phone(p.get("customer_id")),
                staff_name=_text(staff_profiles.get(p.get("staff_id"), {}).get("name"), "Unknown"),
                payment_method=p.get("payment_method"),
                amount=to_decimal(p.get("amount")),
            )
            for p in rows
        ],
    )


# ==================== CUSTOMER PAYMENTS ====================

def compute_customer_payment_report(
    payments: Sequence[Row],
    customers: Sequence[Row],
    customer_profiles: Sequence[Row],
    user_schemes: Sequence[Row],
    schemes: Sequence[Row],
    start: date,
    end: date,
    search: Optional[str] = None,
) -> List[CustomerPaymentRow]:
    """
    Completed payments in range grouped by (customer, enrollment).

    Metal grams are the enrollment's current accumulated snapshot, not a sum.
    The last payment date is the lexical max of ISO date strings. Rows are
    ordered by last payment date (newest first), then customer name.
    """
    directory = _CustomerDirectory(customers, customer_profiles)
    scheme_directory = _SchemeDirectory(user_schemes, schemes)

    grouped: Dict[tuple, CustomerPaymentRow] = {}
    for p in completed_payments(payments):
        day = date_key(p.get("payment_date"))
        if not _in_range(day, start, end):
            continue
        key = (p.get("customer_id"), p.get("user_scheme_id"))
        row = grouped.get(key)
        if row is None:
            enrollment = scheme_directory.enrollment(p.get("user_scheme_id"))
            row = grouped[key] = CustomerPaymentRow(
                customer_id=p.get("customer_id"),
                user_scheme_id=p.get("user_scheme_id"),
                customer_name=directory.name(p.get("customer_id")),
                phone=directory.phone(p.get("customer_id")),
                scheme_name=_text(scheme_directory.scheme(p.get("user_scheme_id")).get("name"), "Unknown"),
                metal_grams=to_decimal(enrollment.get("accumulated_metal_grams")),
            )
        row.total_payments += 1
        row.total_paid += to_decimal(p.get("amount"))
        if day > row.last_payment_date:
            row.last_payment_date = day

    rows = list(grouped.values())
    if search:
        needle = search.lower()
        rows = [r for r in rows if needle in r.customer_name.lower() or search in r.phone]

    rows.sort(key=lambda r: r.customer_name)
    rows.sort(key=lambda r: r.last_payment_date, reverse=True)
    return rows


# ==================== ACCESS CONTROL ====================

def compute_access_control(whitelist: Sequence[Row], profiles: Sequence[Row]) -> AccessControlRoster:
    """Whitelisted phones, newest first, joined to the profile with the same phone."""
    by_phone = index_by(profiles, "phone")
    ordered = sorted(whitelist, key=lambda e: str(e.get("created_at") or ""), reverse=True)

    entries = []
    for item in ordered:
        profile = by_phone.get(item.get("phone"), {})
        entries.append(AccessEntry(
            phone=_text(item.get("phone"), "N/A"),
            name=_text(profile.get("name"), "N/A"),
            role=_text(profile.get("role"), "customer"),
            is_active=bool(item.get("active")),
            created_at=None if item.get("created_at") is None else str(item.get("created_at")),
            added_by=item.get("added_by"),
        ))

    return AccessControlRoster(
        entries=entries,
        staff_count=sum(1 for e in entries if e.role == "staff"),
        customer_count=sum(1 for e in entries if e.role == "customer"),
        active_count=sum(1 for e in entries if e.is_active),
    )
