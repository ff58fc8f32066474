"""
Change Notifier

Publish/subscribe channel for "collection X changed" events.

Subscriptions are registered synchronously; events are delivered
asynchronously by a dispatcher task draining an `asyncio.Queue`, so the
emitter of a change never waits for invalidation work. Delivery is
best-effort: a failing subscriber is logged and skipped.
"""
import asyncio
import inspect
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional, Tuple

from src.core.error_taxonomy import ClassifiedError, classify_delivery_failure
from src.data.gateway import COLLECTIONS

logger = logging.getLogger(__name__)

# Collections each report kind reads. Invalidation is driven from this table.
REPORT_DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    "dashboard_metrics": ("customers", "user_schemes", "payments", "withdrawals"),
    "collection_trend": ("payments",),
    "payment_method_distribution": ("payments",),
    "staff_roster": ("profiles", "staff_metadata", "staff_assignments", "payments"),
    "staff_detail": (
        "profiles", "staff_metadata", "staff_assignments", "payments",
        "customers", "user_schemes", "schemes",
    ),
    "scheme_roster": ("schemes", "user_schemes", "payments"),
    "market_rates": ("market_rates",),
    "withdrawals_roster": ("withdrawals", "customers", "profiles", "user_schemes", "schemes"),
    "inflow_series": ("payments",),
    "outflow_series": ("withdrawals",),
    "cash_flow_series": ("payments", "withdrawals"),
    "daily_report": ("payments", "customers", "profiles", "staff_metadata"),
    "staff_performance_report": ("profiles", "staff_metadata", "staff_assignments", "payments"),
    "customer_payment_report": ("payments", "customers", "profiles", "user_schemes", "schemes"),
    "scheme_performance_report": ("schemes", "user_schemes", "payments"),
    "access_control_roster": ("phone_whitelist", "profiles"),
}


def build_collection_index(
    dependencies: Dict[str, Tuple[str, ...]] = REPORT_DEPENDENCIES,
) -> Dict[str, FrozenSet[str]]:
    """Invert report -> collections into collection -> report kinds."""
    index: Dict[str, set] = defaultdict(set)
    for kind, collections in dependencies.items():
        for collection in collections:
            index[collection].add(kind)
    return {collection: frozenset(kinds) for collection, kinds in index.items()}


@dataclass
class ChangeEvent:
    """
    A collection changed.

    `record` is optional and carries no guarantees; subscribers may use it
    for narrower invalidation when it is present.
    """
    collection: str
    record: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


Subscriber = Callable[[ChangeEvent], Any]


class ChangeNotifier:
    """
    Collection-change registry with queued, asynchronous delivery.

    Usage:
        notifier = ChangeNotifier()
        notifier.subscribe("payments", on_change)
        notifier.start()
        notifier.publish("payments", {"id": "pay-1", "staff_id": "st-1"})
    """

    def __init__(
        self,
        dependencies: Dict[str, Tuple[str, ...]] = REPORT_DEPENDENCIES,
        max_failures_kept: int = 100,
    ):
        self._index = build_collection_index(dependencies)
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.delivery_failures: Deque[ClassifiedError] = deque(maxlen=max_failures_kept)
        self.delivered = 0

    def affected_report_kinds(self, collection: str) -> FrozenSet[str]:
        """Report kinds that read the given collection."""
        return self._index.get(collection, frozenset())

    # ==================== REGISTRATION ====================

    def subscribe(self, collection: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for changes to a collection.

        The callback may be a plain function or a coroutine function.

        Returns:
            A function that removes the subscription
        """
        if collection not in COLLECTIONS:
            logger.warning(f"Subscribing to unknown collection: {collection}")
        self._subscribers[collection].append(callback)

        def unsubscribe():
            if callback in self._subscribers[collection]:
                self._subscribers[collection].remove(callback)

        return unsubscribe

    # ==================== LIFECYCLE ====================

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def start(self) -> None:
        """Start the dispatcher on the running event loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._dispatcher = self._loop.create_task(self._dispatch(), name="change-notifier")
        logger.info("Change notifier started")

    async def stop(self) -> None:
        """Stop the dispatcher. Events still queued are dropped."""
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        self._dispatcher = None
        logger.info("Change notifier stopped")

    async def drain(self) -> None:
        """Wait until every event published so far has been delivered."""
        if self._queue is not None and self.running:
            await self._queue.join()

    # ==================== PUBLISHING ====================

    def publish(self, collection: str, record: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        """
        Announce a change. Never blocks; starts the dispatcher on first use.

        Must be called from the event loop thread; use `publish_threadsafe`
        from anywhere else.
        """
        if not self.running:
            self.start()
        event = ChangeEvent(collection=collection, record=record)
        self._queue.put_nowait(event)
        logger.debug(f"Queued change event for {collection}")
        return event

    def publish_threadsafe(self, collection: str, record: Optional[Dict[str, Any]] = None) -> None:
        """Announce a change from outside the event loop thread."""
        if self._loop is None:
            raise RuntimeError("ChangeNotifier.start() must run before publish_threadsafe")
        self._loop.call_soon_threadsafe(self.publish, collection, record)

    # ==================== DELIVERY ====================

    async def _dispatch(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers.get(event.collection, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except Exception as e:
                classified = classify_delivery_failure(
                    e,
                    context={
                        "collection": event.collection,
                        "subscriber": getattr(callback, "__qualname__", repr(callback)),
                    },
                )
                self.delivery_failures.append(classified)
                logger.warning(
                    f"Change delivery for {event.collection} failed: {classified.message}"
                )
