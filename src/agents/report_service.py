"""
Report Service

Public entry point of the reporting core. Exposes one coroutine per report
kind and orchestrates:

1. Parameter validation (pydantic models, rejected before any fetch)
2. Report cache lookup (single-flight, stale-while-revalidate)
3. Fetch: concurrent gateway reads joined with `asyncio.gather`
4. Aggregate: pure functions from `src.data.aggregators`

It also subscribes to the change notifier so that a change to a collection
invalidates every cached report that reads it, and runs a periodic sweeper
that refreshes reports whose interval has elapsed.

Gateway failures never reach the caller: the cache serves the last value or
an explicit empty report, and the classified failure is kept in
`last_errors` until the report computes successfully again.
"""
import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config.settings import AppConfig, get_config
from src.core.error_taxonomy import ClassifiedError, ErrorCategory, classify_error
from src.core.observability import SpanKind, Tracer
from src.core.report_params import (
    AsOfParams,
    CustomerPaymentParams,
    DateRangeParams,
    NoParams,
    ReportParams,
    StaffParams,
    build_params,
)
from src.data import aggregators
from src.data.change_notifier import REPORT_DEPENDENCIES, ChangeEvent, ChangeNotifier
from src.data.gateway import Filter, RecordStoreGateway
from src.data.report_cache import ReportCache
from src.data.report_models import (
    AccessControlRoster,
    CashFlowSeries,
    DailyReport,
    DashboardMetrics,
    InflowSeries,
    MarketRates,
    OutflowSeries,
)

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# Record fields that identify the staff member a change concerns
_STAFF_KEYS = {
    "payments": "staff_id",
    "staff_assignments": "staff_id",
    "staff_metadata": "staff_id",
    "profiles": "id",  # staff profiles only
}


def _ids(rows: Iterable[Row], field: str) -> List[Any]:
    """Distinct non-null values of a field, in first-seen order."""
    return list(dict.fromkeys(r.get(field) for r in rows if r.get(field) is not None))


class ReportService:
    """
    Cached report catalog over a record store gateway.

    Usage:
        service = ReportService(InMemoryGateway(ledger))
        await service.start()
        metrics = await service.dashboard_metrics()
        await service.aclose()
    """

    def __init__(
        self,
        gateway: RecordStoreGateway,
        cache: Optional[ReportCache] = None,
        notifier: Optional[ChangeNotifier] = None,
        config: Optional[AppConfig] = None,
        tracer: Optional[Tracer] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.gateway = gateway
        self.config = config or get_config()
        self.tracer = tracer or Tracer()
        self.cache = cache or ReportCache(
            refresh_intervals=self.config.cache.refresh_intervals(),
            tracer=self.tracer,
        )
        self.cache.on_error = self._record_error
        self.notifier = notifier or ChangeNotifier()
        self._today = today or date.today
        self._sweeper: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self.last_errors: Dict[Tuple[str, str], ClassifiedError] = {}

        self.wire_notifier()

    # ==================== LIFECYCLE ====================

    def wire_notifier(self) -> None:
        """Subscribe to every collection a report kind reads (idempotent)."""
        if self._unsubscribers:
            return
        collections = {c for deps in REPORT_DEPENDENCIES.values() for c in deps}
        for collection in sorted(collections):
            self._unsubscribers.append(self.notifier.subscribe(collection, self._on_change))

    async def start(self) -> None:
        """Start change delivery and the periodic refresh sweeper."""
        self.notifier.start()
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_forever(), name="report-cache-sweeper"
            )
        logger.info("Report service started")

    async def aclose(self) -> None:
        """Stop background work: sweeper, notifier dispatcher and pending refreshes."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.notifier.stop()
        await self.cache.aclose()
        logger.info("Report service stopped")

    async def __aenter__(self) -> "ReportService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _sweep_forever(self) -> None:
        interval = self.config.cache.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.cache.refresh_expired()

    # ==================== INVALIDATION ====================

    def _on_change(self, event: ChangeEvent) -> None:
        kinds = self.notifier.affected_report_kinds(event.collection)
        with self.tracer.start_span(
            f"{event.collection}.invalidate",
            SpanKind.INVALIDATION,
            {"collection": event.collection, "kinds": sorted(kinds)},
        ):
            for kind in sorted(kinds):
                self.cache.invalidate(kind, self._invalidation_match(kind, event))

    @staticmethod
    def _invalidation_match(kind: str, event: ChangeEvent):
        """Narrow staff detail invalidation to one staff member when the event says which."""
        if kind != "staff_detail" or not event.record:
            return None
        # Customer profiles appear inside every staff detail that lists them
        if event.collection == "profiles" and event.record.get("role") != "staff":
            return None
        staff_id = event.record.get(_STAFF_KEYS.get(event.collection, ""))
        if staff_id is None:
            return None
        return lambda params: getattr(params, "staff_id", None) == staff_id

    def _record_error(self, kind: str, key: str, error: Exception) -> None:
        classified = classify_error(error, context={"report": kind, "key": key})
        if classified.category in (ErrorCategory.GATEWAY_UNAVAILABLE, ErrorCategory.GATEWAY_TIMEOUT):
            classified.pipeline_phase = "fetch"
        else:
            classified.pipeline_phase = "aggregate"
        self.last_errors[(kind, key)] = classified
        logger.warning(f"{kind} degraded to cached/empty result: {classified.category.name}")

    # ==================== PIPELINE ====================

    async def _report(
        self,
        kind: str,
        params: ReportParams,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        aggregate: Callable[[Dict[str, Any]], Any],
        empty: Callable[[], Any],
        force_refresh: bool = False,
    ) -> Any:
        key = params.cache_key()

        async def compute():
            with self.tracer.start_span(f"{kind}.fetch", SpanKind.FETCH, {"report": kind, "key": key}):
                rows = await fetch()
            with self.tracer.start_span(f"{kind}.aggregate", SpanKind.AGGREGATE, {"report": kind, "key": key}):
                result = aggregate(rows)
            self.last_errors.pop((kind, key), None)
            return result

        return await self.cache.get(kind, params, compute, empty, force_refresh=force_refresh)

    async def _fetch_all(self, **reads: Awaitable[Any]) -> Dict[str, Any]:
        """
        Run named reads concurrently. All-or-nothing: the first failure
        cancels the remaining reads and propagates.
        """
        tasks = {name: asyncio.ensure_future(read) for name, read in reads.items()}
        try:
            results = await asyncio.gather(*tasks.values())
        except BaseException:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise
        return dict(zip(tasks, results))

    async def _select(self, collection: str, *filters: Filter, **options) -> List[Row]:
        return await self.gateway.select(collection, list(filters), **options)

    async def _select_in(self, collection: str, field: str, values: List[Any]) -> List[Row]:
        """Join read by id list; skips the round trip when there is nothing to join."""
        if not values:
            return []
        return await self.gateway.select(collection, [Filter.isin(field, values)])

    async def _assignment_counts(self, staff_ids: List[Any]) -> Dict[str, int]:
        """
        Active assignment count per staff id.

        One grouped read when the gateway supports bulk reads, otherwise one
        count per staff member, bounded by `max_parallel_fetches`.
        """
        if self.gateway.supports_bulk_reads:
            rows = await self._select("staff_assignments", Filter.eq("is_active", True))
            return aggregators.group_assignment_counts(rows)

        semaphore = asyncio.Semaphore(self.config.reports.max_parallel_fetches)

        async def count_one(staff_id):
            async with semaphore:
                return staff_id, await self.gateway.count(
                    "staff_assignments",
                    [Filter.eq("staff_id", staff_id), Filter.eq("is_active", True)],
                )

        return dict(await asyncio.gather(*(count_one(s) for s in staff_ids)))

    def _as_of(self, as_of: Optional[date]) -> date:
        return as_of or self._today()

    # ==================== DASHBOARD ====================

    async def dashboard_metrics(self, as_of: Optional[date] = None, force_refresh: bool = False) -> DashboardMetrics:
        params = build_params(AsOfParams, as_of=self._as_of(as_of))

        async def fetch():
            return await self._fetch_all(
                customers=self.gateway.count("customers", [Filter.eq("active", True)]),
                enrollments=self.gateway.count("user_schemes", [Filter.eq("status", "active")]),
                payments=self._select("payments", Filter.eq("status", "completed")),
                withdrawals=self._select("withdrawals"),
            )

        def aggregate(rows):
            return aggregators.compute_dashboard_metrics(
                rows["customers"], rows["enrollments"], rows["payments"], rows["withdrawals"], params.as_of,
            )

        return await self._report("dashboard_metrics", params, fetch, aggregate, DashboardMetrics, force_refresh)

    async def collection_trend(self, as_of: Optional[date] = None, force_refresh: bool = False):
        params = build_params(AsOfParams, as_of=self._as_of(as_of))
        days = self.config.reports.trend_days

        async def fetch():
            return await self._fetch_all(payments=self._select(
                "payments",
                Filter.eq("status", "completed"),
                Filter.gte("payment_date", params.as_of - timedelta(days=days)),
                Filter.lte("payment_date", params.as_of),
            ))

        def aggregate(rows):
            return aggregators.compute_collection_trend(rows["payments"], params.as_of, days)

        return await self._report("collection_trend", params, fetch, aggregate, list, force_refresh)

    async def payment_method_distribution(self, force_refresh: bool = False):
        params = NoParams()

        async def fetch():
            return await self._fetch_all(payments=self._select("payments", Filter.eq("status", "completed")))

        def aggregate(rows):
            return aggregators.compute_payment_method_distribution(rows["payments"])

        return await self._report("payment_method_distribution", params, fetch, aggregate, list, force_refresh)

    # ==================== STAFF ====================

    async def staff_roster(self, as_of: Optional[date] = None, force_refresh: bool = False):
        params = build_params(AsOfParams, as_of=self._as_of(as_of))

        async def fetch():
            rows = await self._fetch_all(
                staff=self._select("profiles", Filter.eq("role", "staff"), order_by="name"),
                metadata=self._select("staff_metadata"),
                payments=self._select(
                    "payments", Filter.eq("status", "completed"), Filter.eq("payment_date", params.as_of),
                ),
            )
            rows["assignment_counts"] = await self._assignment_counts(_ids(rows["staff"], "id"))
            return rows

        def aggregate(rows):
            return aggregators.compute_staff_roster(
                rows["staff"], rows["metadata"], rows["assignment_counts"], rows["payments"], params.as_of,
            )

        return await self._report("staff_roster", params, fetch, aggregate, list, force_refresh)

    async def staff_detail(self, staff_id: str, as_of: Optional[date] = None, force_refresh: bool = False):
        """Deep view of one staff member; None when the staff id is unknown."""
        params = build_params(StaffParams, staff_id=staff_id, as_of=self._as_of(as_of))

        async def fetch():
            rows = await self._fetch_all(
                profile=self._select("profiles", Filter.eq("id", params.staff_id), limit=1),
                metadata=self._select("staff_metadata", Filter.eq("staff_id", params.staff_id), limit=1),
                payments=self._select(
                    "payments", Filter.eq("staff_id", params.staff_id), Filter.eq("status", "completed"),
                ),
                assignments=self._select(
                    "staff_assignments", Filter.eq("staff_id", params.staff_id), Filter.eq("is_active", True),
                ),
            )
            if not rows["profile"]:
                return rows

            customer_ids = _ids(rows["assignments"] + rows["payments"], "customer_id")
            joined = await self._fetch_all(
                customers=self._select_in("customers", "id", customer_ids),
                user_schemes=self._select_in("user_schemes", "id", _ids(rows["payments"], "user_scheme_id")),
            )
            rows.update(joined)
            rows.update(await self._fetch_all(
                customer_profiles=self._select_in("profiles", "id", _ids(joined["customers"], "profile_id")),
                schemes=self._select_in("schemes", "id", _ids(joined["user_schemes"], "scheme_id")),
            ))
            return rows

        def aggregate(rows):
            if not rows["profile"]:
                return None
            return aggregators.compute_staff_detail(
                rows["profile"][0],
                rows["metadata"][0] if rows["metadata"] else None,
                rows["payments"],
                rows["assignments"],
                rows["customers"],
                rows["customer_profiles"],
                rows["user_schemes"],
                rows["schemes"],
                params.as_of,
                self.config.reports.recent_payments_limit,
            )

        return await self._report("staff_detail", params, fetch, aggregate, lambda: None, force_refresh)

    async def staff_performance_report(self, start: date, end: date, force_refresh: bool = False):
        params = build_params(DateRangeParams, start=start, end=end)

        async def fetch():
            rows = await self._fetch_all(
                staff=self._select("profiles", Filter.eq("role", "staff"), order_by="name"),
                metadata=self._select("staff_metadata"),
                payments=self._select(
                    "payments",
                    Filter.eq("status", "completed"),
                    Filter.gte("payment_date", params.start),
                    Filter.lte("payment_date", params.end),
                ),
            )
            rows["assignment_counts"] = await self._assignment_counts(_ids(rows["staff"], "id"))
            return rows

        def aggregate(rows):
            return aggregators.compute_staff_performance(
                rows["staff"], rows["metadata"], rows["payments"], rows["assignment_counts"],
                params.start, params.end,
            )

        return await self._report("staff_performance_report", params, fetch, aggregate, list, force_refresh)

    # ==================== SCHEMES ====================

    async def _scheme_rows(self) -> Dict[str, Any]:
        return await self._fetch_all(
            schemes=self._select("schemes", order_by="created_at", descending=True),
            user_schemes=self._select("user_schemes"),
            payments=self._select("payments", Filter.eq("status", "completed")),
        )

    async def scheme_roster(self, force_refresh: bool = False):
        def aggregate(rows):
            return aggregators.compute_scheme_roster(rows["schemes"], rows["user_schemes"], rows["payments"])

        return await self._report("scheme_roster", NoParams(), self._scheme_rows, aggregate, list, force_refresh)

    async def scheme_performance_report(self, force_refresh: bool = False):
        def aggregate(rows):
            return aggregators.compute_scheme_performance(rows["schemes"], rows["user_schemes"], rows["payments"])

        return await self._report(
            "scheme_performance_report", NoParams(), self._scheme_rows, aggregate, list, force_refresh,
        )

    # ==================== MARKET RATES ====================

    async def market_rates(self, as_of: Optional[date] = None, force_refresh: bool = False) -> MarketRates:
        params = build_params(AsOfParams, as_of=self._as_of(as_of))
        history_days = self.config.reports.trend_days

        def latest(asset_type):
            return self._select(
                "market_rates", Filter.eq("asset_type", asset_type),
                order_by="rate_date", descending=True, limit=1,
            )

        async def fetch():
            return await self._fetch_all(
                gold=latest("gold"),
                silver=latest("silver"),
                history=self._select(
                    "market_rates",
                    Filter.gte("rate_date", params.as_of - timedelta(days=history_days)),
                    Filter.lte("rate_date", params.as_of),
                    order_by="rate_date",
                    descending=True,
                ),
            )

        def aggregate(rows):
            return aggregators.compute_market_rates(
                rows["gold"] + rows["silver"], rows["history"], params.as_of, history_days,
            )

        return await self._report("market_rates", params, fetch, aggregate, MarketRates, force_refresh)

    # ==================== WITHDRAWALS ====================

    async def withdrawals_roster(self, force_refresh: bool = False):
        async def fetch():
            rows = await self._fetch_all(
                withdrawals=self._select("withdrawals", order_by="created_at", descending=True),
            )
            rows.update(await self._fetch_all(
                customers=self._select_in("customers", "id", _ids(rows["withdrawals"], "customer_id")),
                user_schemes=self._select_in("user_schemes", "id", _ids(rows["withdrawals"], "user_scheme_id")),
            ))
            rows.update(await self._fetch_all(
                profiles=self._select_in("profiles", "id", _ids(rows["customers"], "profile_id")),
                schemes=self._select_in("schemes", "id", _ids(rows["user_schemes"], "scheme_id")),
            ))
            return rows

        def aggregate(rows):
            return aggregators.compute_withdrawals_roster(
                rows["withdrawals"], rows["customers"], rows["profiles"], rows["user_schemes"], rows["schemes"],
            )

        return await self._report("withdrawals_roster", NoParams(), fetch, aggregate, list, force_refresh)

    # ==================== CASH FLOW SERIES ====================

    def _payments_in(self, params: DateRangeParams):
        return self._select(
            "payments",
            Filter.eq("status", "completed"),
            Filter.gte("payment_date", params.start),
            Filter.lte("payment_date", params.end),
        )

    def _withdrawals_in(self, params: DateRangeParams):
        # processed_at is a timestamp; widen by a day on each side so offsets
        # cannot drop a row, the aggregator applies the exact date bounds
        return self._select(
            "withdrawals",
            Filter.eq("status", "processed"),
            Filter.gte("processed_at", (params.start - timedelta(days=1)).isoformat()),
            Filter.lt("processed_at", (params.end + timedelta(days=2)).isoformat()),
        )

    async def inflow_series(self, start: date, end: date, force_refresh: bool = False) -> InflowSeries:
        params = build_params(DateRangeParams, start=start, end=end)

        async def fetch():
            return await self._fetch_all(payments=self._payments_in(params))

        def aggregate(rows):
            return aggregators.compute_inflow_series(rows["payments"], params.start, params.end)

        return await self._report("inflow_series", params, fetch, aggregate, InflowSeries, force_refresh)

    async def outflow_series(self, start: date, end: date, force_refresh: bool = False) -> OutflowSeries:
        params = build_params(DateRangeParams, start=start, end=end)

        async def fetch():
            return await self._fetch_all(withdrawals=self._withdrawals_in(params))

        def aggregate(rows):
            return aggregators.compute_outflow_series(rows["withdrawals"], params.start, params.end)

        return await self._report("outflow_series", params, fetch, aggregate, OutflowSeries, force_refresh)

    async def cash_flow_series(self, start: date, end: date, force_refresh: bool = False) -> CashFlowSeries:
        params = build_params(DateRangeParams, start=start, end=end)

        async def fetch():
            return await self._fetch_all(
                payments=self._payments_in(params),
                withdrawals=self._withdrawals_in(params),
            )

        def aggregate(rows):
            return aggregators.compute_cash_flow_series(
                rows["payments"], rows["withdrawals"], params.start, params.end,
            )

        return await self._report("cash_flow_series", params, fetch, aggregate, CashFlowSeries, force_refresh)

    # ==================== DAILY & CUSTOMER REPORTS ====================

    async def daily_report(self, report_date: Optional[date] = None, force_refresh: bool = False) -> DailyReport:
        params = build_params(AsOfParams, as_of=self._as_of(report_date))

        async def fetch():
            rows = await self._fetch_all(payments=self._select(
                "payments", Filter.eq("status", "completed"), Filter.eq("payment_date", params.as_of),
            ))
            staff_ids = _ids(rows["payments"], "staff_id")
            rows.update(await self._fetch_all(
                customers=self._select_in("customers", "id", _ids(rows["payments"], "customer_id")),
                metadata=self._select_in("staff_metadata", "staff_id", staff_ids),
            ))
            rows["profiles"] = await self._select_in(
                "profiles", "id", _ids(rows["customers"], "profile_id") + staff_ids,
            )
            return rows

        def aggregate(rows):
            return aggregators.compute_daily_report(
                rows["payments"], rows["customers"], rows["profiles"], rows["metadata"], params.as_of,
            )

        return await self._report(
            "daily_report", params, fetch, aggregate,
            lambda: DailyReport(date=params.as_of.isoformat()), force_refresh,
        )

    async def customer_payment_report(
        self,
        start: date,
        end: date,
        search: Optional[str] = None,
        force_refresh: bool = False,
    ):
        params = build_params(CustomerPaymentParams, start=start, end=end, search=search)

        async def fetch():
            rows = await self._fetch_all(payments=self._payments_in(params))
            rows.update(await self._fetch_all(
                customers=self._select_in("customers", "id", _ids(rows["payments"], "customer_id")),
                user_schemes=self._select_in("user_schemes", "id", _ids(rows["payments"], "user_scheme_id")),
            ))
            rows.update(await self._fetch_all(
                profiles=self._select_in("profiles", "id", _ids(rows["customers"], "profile_id")),
                schemes=self._select_in("schemes", "id", _ids(rows["user_schemes"], "scheme_id")),
            ))
            return rows

        def aggregate(rows):
            return aggregators.compute_customer_payment_report(
                rows["payments"], rows["customers"], rows["profiles"], rows["user_schemes"], rows["schemes"],
                params.start, params.end, params.search,
            )

        return await self._report("customer_payment_report", params, fetch, aggregate, list, force_refresh)

    # ==================== ACCESS CONTROL ====================

    async def access_control_roster(self, force_refresh: bool = False) -> AccessControlRoster:
        async def fetch():
            rows = await self._fetch_all(
                whitelist=self._select("phone_whitelist", order_by="created_at", descending=True),
            )
            rows["profiles"] = await self._select_in("profiles", "phone", _ids(rows["whitelist"], "phone"))
            return rows

        def aggregate(rows):
            return aggregators.compute_access_control(rows["whitelist"], rows["profiles"])

        return await self._report(
            "access_control_roster", NoParams(), fetch, aggregate, AccessControlRoster, force_refresh,
        )

    # ==================== DIAGNOSTICS ====================

    def health(self) -> Dict[str, Any]:
        """Cache counters, span summary and current degraded reports."""
        return {
            "cache": self.cache.stats(),
            "spans": self.tracer.summary(),
            "errors": [
                {"report": kind, "key": key, **error.to_dict()}
                for (kind, key), error in self.last_errors.items()
            ],
            "invalidation_failures": len(self.notifier.delivery_failures),
        }
