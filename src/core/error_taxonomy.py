"""
Error Taxonomy for the Reporting Core

Provides systematic classification of failure modes with:
- Error categories aligned to the fetch / aggregate / invalidate pipeline
- Recoverability indicators
- Suggested recovery actions
- Structured error context for upstream reporting

Expected "no data yet" conditions are NOT errors; reports simply come back
empty. Only genuine faults are classified here.
"""

from enum import Enum, auto
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
import asyncio
import logging
import traceback

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Systematic classification of failure modes."""
    # Fetch phase
    GATEWAY_UNAVAILABLE = auto()
    GATEWAY_TIMEOUT = auto()
    MALFORMED_RECORD = auto()

    # Aggregate phase
    DIVISION_BY_ZERO = auto()

    # Invalidation
    INVALIDATION_DELIVERY_FAILED = auto()

    # Caller input
    INVALID_PARAMETERS = auto()

    # System Errors
    INTERNAL_ERROR = auto()
    UNKNOWN_ERROR = auto()


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RecoveryAction:
    """Suggested action to recover from an error."""
    action_type: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def retry(delay_seconds: float = 1.0, max_attempts: int = 3) -> "RecoveryAction":
        return RecoveryAction(
            action_type="retry",
            description=f"Retry after {delay_seconds}s (max {max_attempts} attempts)",
            parameters={"delay": delay_seconds, "max_attempts": max_attempts}
        )

    @staticmethod
    def serve_last_known() -> "RecoveryAction":
        return RecoveryAction(
            action_type="serve_last_known",
            description="Serve the last computed report until the next refresh succeeds",
        )

    @staticmethod
    def serve_empty() -> "RecoveryAction":
        return RecoveryAction(
            action_type="serve_empty",
            description="Serve an empty, structurally valid report",
        )

    @staticmethod
    def wait_for_refresh() -> "RecoveryAction":
        return RecoveryAction(
            action_type="wait_for_refresh",
            description="Freshness restored by the periodic refresh interval",
        )

    @staticmethod
    def abort(reason: str) -> "RecoveryAction":
        return RecoveryAction(
            action_type="abort",
            description=f"Abort operation: {reason}",
            parameters={"reason": reason}
        )


@dataclass
class ClassifiedError:
    """A classified error with full context."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    recoverable: bool
    recovery_actions: List[RecoveryAction]

    original_exception: Optional[Exception] = None
    pipeline_phase: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.original_exception and not self.stack_trace:
            self.stack_trace = ''.join(traceback.format_exception(
                type(self.original_exception),
                self.original_exception,
                self.original_exception.__traceback__
            ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.name,
            "severity": self.severity.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "recovery_actions": [
                {"type": a.action_type, "description": a.description}
                for a in self.recovery_actions
            ],
            "pipeline_phase": self.pipeline_phase,
            "context": self.context,
            "occurred_at": self.occurred_at.isoformat(),
        }


class ReportError(Exception):
    """Base exception for reporting-core errors with classification."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = False,
        recovery_actions: List[RecoveryAction] = None,
        context: Dict[str, Any] = None,
    ):
        super().__init__(message)
        self.category = category
        self.severity = severity
        self.recoverable = recoverable
        self.recovery_actions = recovery_actions or []
        self.context = context or {}

    def classify(self) -> ClassifiedError:
        return ClassifiedError(
            category=self.category,
            severity=self.severity,
            message=str(self),
            recoverable=self.recoverable,
            recovery_actions=list(self.recovery_actions),
            original_exception=self,
            context=dict(self.context),
        )


class GatewayError(ReportError):
    """Raised when the record store cannot be read."""

    def __init__(self, message: str, collection: Optional[str] = None, timeout: bool = False):
        super().__init__(
            message,
            category=ErrorCategory.GATEWAY_TIMEOUT if timeout else ErrorCategory.GATEWAY_UNAVAILABLE,
            severity=ErrorSeverity.HIGH,
            recoverable=True,
            recovery_actions=[RecoveryAction.serve_last_known(), RecoveryAction.serve_empty()],
            context={"collection": collection} if collection else {},
        )
        self.collection = collection


class InvalidReportParameters(ReportError):
    """Raised when a caller passes parameters a report cannot accept."""

    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(
            message,
            category=ErrorCategory.INVALID_PARAMETERS,
            severity=ErrorSeverity.LOW,
            recoverable=False,
            recovery_actions=[RecoveryAction.abort("fix the request parameters")],
            context=context,
        )


def classify_error(
    exception: Exception,
    pipeline_phase: str = None,
    context: Dict[str, Any] = None,
) -> ClassifiedError:
    """Classify an exception into a structured error."""
    context = context or {}

    if isinstance(exception, ReportError):
        classified = exception.classify()
        classified.pipeline_phase = pipeline_phase
        classified.context.update(context)
        return classified

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return ClassifiedError(
            category=ErrorCategory.GATEWAY_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            message=str(exception) or "timed out",
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=5.0), RecoveryAction.serve_last_known()],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    if isinstance(exception, (ConnectionError, OSError)):
        return ClassifiedError(
            category=ErrorCategory.GATEWAY_UNAVAILABLE,
            severity=ErrorSeverity.HIGH,
            message=str(exception),
            recoverable=True,
            recovery_actions=[RecoveryAction.serve_last_known(), RecoveryAction.serve_empty()],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    if isinstance(exception, ZeroDivisionError):
        return ClassifiedError(
            category=ErrorCategory.DIVISION_BY_ZERO,
            severity=ErrorSeverity.MEDIUM,
            message=str(exception),
            recoverable=False,
            recovery_actions=[],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    if isinstance(exception, (KeyError, TypeError, ValueError)):
        return ClassifiedError(
            category=ErrorCategory.MALFORMED_RECORD,
            severity=ErrorSeverity.MEDIUM,
            message=f"{type(exception).__name__}: {exception}",
            recoverable=True,
            recovery_actions=[RecoveryAction.serve_last_known()],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    # Default
    return ClassifiedError(
        category=ErrorCategory.UNKNOWN_ERROR,
        severity=ErrorSeverity.HIGH,
        message=str(exception),
        recoverable=False,
        recovery_actions=[],
        original_exception=exception,
        pipeline_phase=pipeline_phase,
        context=context,
    )


def classify_delivery_failure(
    exception: Exception,
    context: Dict[str, Any] = None,
) -> ClassifiedError:
    """
    Classify a failed invalidation delivery.

    Delivery is best-effort: the affected report stays stale until its next
    refresh interval or caller-forced refresh.
    """
    return ClassifiedError(
        category=ErrorCategory.INVALIDATION_DELIVERY_FAILED,
        severity=ErrorSeverity.LOW,
        message=f"{type(exception).__name__}: {exception}",
        recoverable=True,
        recovery_actions=[RecoveryAction.wait_for_refresh()],
        original_exception=exception,
        pipeline_phase="invalidation",
        context=context or {},
    )
