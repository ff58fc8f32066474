"""
Record Store Gateway

Read-only access to the ledger's entity collections. The reporting core
depends only on the abstract `RecordStoreGateway`; the concrete store and
its transport live outside this package.

`InMemoryGateway` serves plain row dicts from memory. It backs the demo
entry point and the test suite, and doubles as the reference for how
filters, ordering and limits must behave in any real adapter.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from src.core.error_taxonomy import GatewayError

logger = logging.getLogger(__name__)

# Every collection the reporting core reads
COLLECTIONS = (
    "customers",
    "profiles",
    "staff_metadata",
    "staff_assignments",
    "schemes",
    "user_schemes",
    "payments",
    "withdrawals",
    "market_rates",
    "phone_whitelist",
)


class FilterOp(Enum):
    """Supported read filter operators."""
    EQ = "eq"
    IN = "in"
    GTE = "gte"
    LTE = "lte"
    LT = "lt"


def _comparable(value: Any) -> Any:
    """Dates and timestamps compare as ISO strings, matching how the store returns them."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class Filter:
    """A single read filter: `field op value`."""
    field: str
    op: FilterOp
    value: Any

    @staticmethod
    def eq(field: str, value: Any) -> "Filter":
        return Filter(field, FilterOp.EQ, value)

    @staticmethod
    def isin(field: str, values: Iterable[Any]) -> "Filter":
        return Filter(field, FilterOp.IN, tuple(values))

    @staticmethod
    def gte(field: str, value: Any) -> "Filter":
        return Filter(field, FilterOp.GTE, value)

    @staticmethod
    def lte(field: str, value: Any) -> "Filter":
        return Filter(field, FilterOp.LTE, value)

    @staticmethod
    def lt(field: str, value: Any) -> "Filter":
        return Filter(field, FilterOp.LT, value)

    def matches(self, row: Dict[str, Any]) -> bool:
        """Check whether a row satisfies this filter."""
        actual = _comparable(row.get(self.field))
        if self.op == FilterOp.EQ:
            return actual == _comparable(self.value)
        if self.op == FilterOp.IN:
            return actual in {_comparable(v) for v in self.value}

        # Range filters never match a missing value
        if actual is None:
            return False
        expected = _comparable(self.value)
        if self.op == FilterOp.GTE:
            return actual >= expected
        if self.op == FilterOp.LTE:
            return actual <= expected
        return actual < expected


class RecordStoreGateway(ABC):
    """
    Abstract read-side accessor to the ledger collections.

    Implementations raise `GatewayError` when the store cannot be reached.
    """

    # False when the store cannot answer grouped/bulk reads efficiently; the
    # reporting core then falls back to bounded per-row reads.
    supports_bulk_reads: bool = True

    @abstractmethod
    async def select(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows from a collection.

        Args:
            collection: Collection name (see COLLECTIONS)
            filters: All filters must match (logical AND)
            order_by: Field to sort by; rows missing it sort last
            descending: Sort direction
            limit: Maximum number of rows returned

        Returns:
            List of row dicts (copies; callers may not mutate the store)
        """

    async def count(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
    ) -> int:
        """Count rows matching the filters."""
        return len(await self.select(collection, filters))


class InMemoryGateway(RecordStoreGateway):
    """
    Gateway over in-memory row lists.

    Also offers the knobs tests need: simulated outages and a log of the
    reads issued, to assert on batching behaviour.
    """

    def __init__(
        self,
        collections: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        supports_bulk_reads: bool = True,
        latency_seconds: float = 0.0,
    ):
        self._rows: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
        for name, rows in (collections or {}).items():
            self.load(name, rows)
        self.supports_bulk_reads = supports_bulk_reads
        self.latency_seconds = latency_seconds
        self._unavailable: Set[str] = set()
        self.reads: List[Tuple[str, str]] = []

    # ==================== STORE MANAGEMENT ====================

    def load(self, collection: str, rows: Iterable[Dict[str, Any]]) -> None:
        """Replace the contents of a collection."""
        self._check_collection(collection)
        self._rows[collection] = [dict(r) for r in rows]

    def insert(self, collection: str, row: Dict[str, Any]) -> None:
        """Append one row (stands in for the external write path)."""
        self._check_collection(collection)
        self._rows[collection].append(dict(row))

    def update(self, collection: str, row_id: Any, **changes) -> bool:
        """Apply changes to the row with the given id. Returns False if absent."""
        self._check_collection(collection)
        for row in self._rows[collection]:
            if row.get("id") == row_id:
                row.update(changes)
                return True
        return False

    def set_unavailable(self, collections: Optional[Iterable[str]] = None) -> None:
        """Make reads fail for the given collections (all when None)."""
        self._unavailable = set(collections) if collections is not None else set(COLLECTIONS)

    def set_available(self) -> None:
        self._unavailable = set()

    def _check_collection(self, collection: str) -> None:
        if collection not in self._rows:
            raise ValueError(f"Unknown collection: {collection}")

    # ==================== READS ====================

    async def select(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = await self._read(collection, "select", filters)

        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: _comparable(r[order_by]), reverse=descending)
            rows = present + missing

        if limit is not None:
            rows = rows[:limit]

        return [dict(r) for r in rows]

    async def count(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
    ) -> int:
        return len(await self._read(collection, "count", filters))

    async def _read(
        self,
        collection: str,
        method: str,
        filters: Optional[Sequence[Filter]],
    ) -> List[Dict[str, Any]]:
        self._check_collection(collection)
        self.reads.append((method, collection))

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if collection in self._unavailable:
            logger.warning(f"Simulated outage reading {collection}")
            raise GatewayError(f"Record store unavailable for {collection}", collection=collection)

        filters = filters or []
        return [r for r in self._rows[collection] if all(f.matches(r) for f in filters)]
