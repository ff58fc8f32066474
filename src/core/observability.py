"""
Observability for Report Pipelines

Records one span per pipeline phase (fetch, aggregate, cache refresh) so the
owning service can report how long reports take and which ones fail.

Spans are kept in a bounded in-memory buffer; nothing is exported to disk.
Many report pipelines run concurrently on one event loop, so spans do not
form a parent/child stack - each span carries its report kind and key.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
from contextlib import contextmanager
from collections import deque
from enum import Enum
import asyncio
import itertools
import logging
import time

logger = logging.getLogger(__name__)


class SpanKind(Enum):
    """Types of spans for categorization."""
    FETCH = "fetch"
    AGGREGATE = "aggregate"
    CACHE_REFRESH = "cache_refresh"
    INVALIDATION = "invalidation"


class SpanStatus(Enum):
    """Outcome status of a span."""
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Span:
    """Individual operation in a report pipeline."""
    span_id: str
    name: str
    kind: SpanKind
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SpanStatus = SpanStatus.OK
    attributes: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    _started: float = field(default_factory=time.perf_counter, repr=False)
    _elapsed_ms: Optional[float] = field(default=None, repr=False)

    @property
    def duration_ms(self) -> float:
        """Span duration in milliseconds (0 while still open)."""
        return self._elapsed_ms or 0.0

    def finish(self):
        self.end_time = datetime.utcnow()
        self._elapsed_ms = (time.perf_counter() - self._started) * 1000

    def set_error(self, error: BaseException):
        """Mark span as errored."""
        self.status = SpanStatus.ERROR
        self.error_message = f"{type(error).__name__}: {str(error)}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize span for export."""
        return {
            "span_id": self.span_id,
            "name": self.name,
            "kind": self.kind.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "attributes": self.attributes,
            "error_message": self.error_message,
        }


class Tracer:
    """
    Span recorder for report pipelines.

    Usage:
        tracer = Tracer()

        with tracer.start_span("staff_roster.fetch", SpanKind.FETCH, {"report": "staff_roster"}):
            rows = await gateway.select("profiles", ...)
    """

    def __init__(self, max_spans: int = 500):
        self._spans: deque = deque(maxlen=max_spans)
        self._counter = itertools.count(1)

    @contextmanager
    def start_span(
        self,
        name: str,
        kind: SpanKind,
        attributes: Dict[str, Any] = None,
    ):
        """Open a span; it is closed and recorded when the block exits."""
        span = Span(
            span_id=f"span_{int(time.time() * 1000)}_{next(self._counter)}",
            name=name,
            kind=kind,
            start_time=datetime.utcnow(),
            attributes=dict(attributes or {}),
        )
        try:
            yield span
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                span.status = SpanStatus.CANCELLED
            else:
                span.set_error(e)
            raise
        finally:
            span.finish()
            self._spans.append(span)
            logger.debug(
                f"Span {name} completed in {span.duration_ms:.1f}ms"
                + (f" (error: {span.error_message})" if span.error_message else "")
            )

    def recent_spans(self, kind: Optional[SpanKind] = None, limit: int = 50) -> List[Span]:
        """Most recent spans, newest first."""
        spans = [s for s in reversed(self._spans) if kind is None or s.kind == kind]
        return spans[:limit]

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Count, error count and average duration per span name."""
        grouped: Dict[str, List[Span]] = {}
        for span in self._spans:
            grouped.setdefault(span.name, []).append(span)
        return {
            name: {
                "count": len(spans),
                "errors": sum(1 for s in spans if s.status == SpanStatus.ERROR),
                "avg_ms": sum(s.duration_ms for s in spans) / len(spans),
            }
            for name, spans in grouped.items()
        }

    def clear(self):
        self._spans.clear()
