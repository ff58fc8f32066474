"""
Data layer: record store gateway, aggregators, report cache and change notifier.
"""
from src.data.gateway import (
    COLLECTIONS,
    Filter,
    FilterOp,
    RecordStoreGateway,
    InMemoryGateway,
)
from src.data.report_cache import (
    CacheEntry,
    ReportCache,
)
from src.data.change_notifier import (
    REPORT_DEPENDENCIES,
    ChangeEvent,
    ChangeNotifier,
    build_collection_index,
)

__all__ = [
    # Gateway
    "COLLECTIONS",
    "Filter",
    "FilterOp",
    "RecordStoreGateway",
    "InMemoryGateway",
    # Cache
    "CacheEntry",
    "ReportCache",
    # Invalidation
    "REPORT_DEPENDENCIES",
    "ChangeEvent",
    "ChangeNotifier",
    "build_collection_index",
]
