"""
Report Cache

Holds the last computed result per (report kind, parameters) key.

- At most one computation is in flight per key; concurrent callers share it.
- The first population of a key is awaited. After that a stale value is
  served immediately while a background refresh replaces it.
- A key goes stale when its kind's refresh interval elapses or when it is
  invalidated. Kinds without an interval refresh only on invalidation or
  a caller-forced refresh.
- A caller dropping out of its await never cancels the shared computation.
- A failed computation never raises to the caller: the previous value is
  kept, or the report's empty value is returned without being stored.
- Callers receive their own copy of a cached report; mutating it never
  changes what other callers see.

Per-key state is written only by the key's producer task or by synchronous
code on the event loop, so no locks are needed.
"""
import asyncio
import copy
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from src.core.observability import SpanKind, Tracer
from src.core.report_params import ReportParams

logger = logging.getLogger(__name__)

Compute = Callable[[], Awaitable[Any]]
ErrorHook = Callable[[str, str, Exception], None]


@dataclass
class CacheEntry:
    """Cached state for one report key."""
    kind: str
    params: ReportParams
    compute: Compute
    empty: Callable[[], Any]
    value: Any = None
    has_value: bool = False
    computed_at: Optional[float] = None
    stale: bool = False
    # Bumped on every invalidation so a refresh that started earlier can tell
    # its result is already out of date
    generation: int = 0
    task: Optional[asyncio.Task] = None
    last_error: Optional[Exception] = None

    @property
    def key(self) -> str:
        return self.params.cache_key()


@dataclass
class KindStats:
    hits: int = 0
    misses: int = 0
    refreshes: int = 0
    failures: int = 0
    invalidations: int = 0


class ReportCache:
    """
    Single-flight, stale-while-revalidate cache for report results.

    Usage:
        cache = ReportCache({"dashboard_metrics": 30})
        metrics = await cache.get("dashboard_metrics", params, compute, DashboardMetrics)
    """

    def __init__(
        self,
        refresh_intervals: Optional[Dict[str, Optional[float]]] = None,
        clock: Callable[[], float] = time.monotonic,
        tracer: Optional[Tracer] = None,
        on_error: Optional[ErrorHook] = None,
    ):
        self.refresh_intervals = dict(refresh_intervals or {})
        self._clock = clock
        self._tracer = tracer or Tracer()
        self.on_error = on_error
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stats: Dict[str, KindStats] = defaultdict(KindStats)

    # ==================== READS ====================

    async def get(
        self,
        kind: str,
        params: ReportParams,
        compute: Compute,
        empty: Callable[[], Any],
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the cached report for (kind, params).

        Args:
            kind: Report kind name
            params: Validated parameters; their cache key identifies the entry
            compute: Zero-argument coroutine function running fetch + aggregate
            empty: Factory for the explicit empty report used on first-time failure
            force_refresh: Recompute now and wait for the result (joins a
                refresh that is already in flight)
        """
        entry = self._entry(kind, params, compute, empty)
        stats = self._stats[kind]

        if force_refresh:
            logger.info(f"Forced refresh: {kind} {entry.key}")
            return copy.deepcopy(await asyncio.shield(entry.task or self._schedule(entry)))

        if not entry.has_value:
            stats.misses += 1
            logger.info(f"Cache miss: {kind} {entry.key}")
            return copy.deepcopy(await asyncio.shield(entry.task or self._schedule(entry)))

        stats.hits += 1
        if entry.task is None and (entry.stale or self._expired(entry)):
            logger.debug(f"Serving stale {kind} {entry.key} while refreshing")
            self._schedule(entry)
        else:
            logger.debug(f"Cache hit: {kind} {entry.key}")
        return copy.deepcopy(entry.value)

    def peek(self, kind: str, params: ReportParams) -> Optional[CacheEntry]:
        """Inspect an entry without triggering any computation."""
        return self._entries.get((kind, params.cache_key()))

    def _entry(self, kind, params, compute, empty) -> CacheEntry:
        entry = self._entries.get((kind, params.cache_key()))
        if entry is None:
            entry = CacheEntry(kind=kind, params=params, compute=compute, empty=empty)
            self._entries[(kind, entry.key)] = entry
        else:
            # Later refreshes use the most recent pipeline the caller handed in
            entry.compute = compute
            entry.empty = empty
        return entry

    def _expired(self, entry: CacheEntry) -> bool:
        interval = self.refresh_intervals.get(entry.kind)
        if not interval or entry.computed_at is None:
            return False
        return self._clock() - entry.computed_at >= interval

    # ==================== PRODUCERS ====================

    def _schedule(self, entry: CacheEntry) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._produce(entry), name=f"report:{entry.kind}:{entry.key}"
        )
        entry.task = task
        self._tasks.add(task)

        def done(finished: asyncio.Task):
            self._tasks.discard(finished)
            # Covers tasks cancelled before their first step
            if entry.task is finished:
                entry.task = None

        task.add_done_callback(done)
        return task

    async def _produce(self, entry: CacheEntry) -> Any:
        generation = entry.generation
        stats = self._stats[entry.kind]
        stats.refreshes += 1

        try:
            with self._tracer.start_span(
                f"{entry.kind}.refresh",
                SpanKind.CACHE_REFRESH,
                {"report": entry.kind, "key": entry.key},
            ):
                value = await entry.compute()
        except asyncio.CancelledError:
            entry.task = None
            raise
        except Exception as e:
            entry.task = None
            entry.last_error = e
            stats.failures += 1
            logger.error(f"Report {entry.kind} {entry.key} failed: {type(e).__name__}: {e}")
            if self.on_error:
                self.on_error(entry.kind, entry.key, e)
            if entry.has_value:
                return entry.value
            return entry.empty()

        entry.task = None
        entry.value = value
        entry.has_value = True
        entry.computed_at = self._clock()
        entry.last_error = None
        entry.stale = entry.generation != generation
        logger.info(f"Cached report: {entry.kind} {entry.key}")

        if entry.stale:
            # Invalidated while computing; the result may predate the change
            self._schedule(entry)
        return value

    # ==================== INVALIDATION ====================

    def invalidate(
        self,
        kind: str,
        match: Optional[Callable[[ReportParams], bool]] = None,
    ) -> int:
        """
        Mark cached keys of a kind stale and schedule their recompute.

        Args:
            kind: Report kind to invalidate
            match: Optional predicate over the entry's parameters; only
                matching keys are invalidated

        Returns:
            Number of keys invalidated
        """
        count = 0
        for entry in list(self._entries.values()):
            if entry.kind != kind or (match is not None and not match(entry.params)):
                continue
            entry.stale = True
            entry.generation += 1
            count += 1
            if entry.task is None:
                self._schedule(entry)

        if count:
            self._stats[kind].invalidations += count
            logger.info(f"Invalidated {count} cached {kind} report(s)")
        return count

    def refresh_expired(self) -> int:
        """Schedule a refresh for every populated key that is stale or past its interval."""
        count = 0
        for entry in list(self._entries.values()):
            if entry.task is None and entry.has_value and (entry.stale or self._expired(entry)):
                self._schedule(entry)
                count += 1
        if count:
            logger.debug(f"Sweeper scheduled {count} refresh(es)")
        return count

    # ==================== LIFECYCLE ====================

    async def wait_idle(self) -> None:
        """Wait until no refresh is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Counters per report kind, plus the number of cached keys."""
        entries: Dict[str, int] = defaultdict(int)
        for kind, _ in self._entries:
            entries[kind] += 1
        return {
            kind: {**vars(s), "entries": entries.get(kind, 0)}
            for kind, s in self._stats.items()
        }

    def clear(self) -> None:
        """Drop every cached value. In-flight refreshes keep running."""
        self._entries.clear()
        logger.info("Report cache cleared")

    async def aclose(self) -> None:
        """Cancel background refreshes."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
