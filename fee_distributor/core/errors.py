"""Error Hierarchy — typed, categorized exceptions for every reconciliation failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - retryable is True only for TransientNetworkError (and only within a batch budget)
    - Network and persistence errors never carry credentials or raw payloads
    - to_response() produces the REST envelope used by the status API

Design Decisions:
    - Single hierarchy with DistributorError base: the pass boundary catches it
      and records error.code, so aborts are countable per cause
    - ErrorContext as dataclass: pass/batch identifiers travel with the error
      without coupling core to the logging framework
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    CONFIGURATION = "configuration"
    DATABASE = "database"
    EXTERNAL_NETWORK = "external_network"
    AMBIGUOUS = "ambiguous"
    CONFLICT = "conflict"
    INVARIANT = "invariant"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pass_id: str | None = None
    batch_key: str | None = None
    attempt: int | None = None
    transfer_ref: str | None = None
    debug_info: dict[str, Any] | None = None


class DistributorError(Exception):
    """Base exception for all fee distributor errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "pass_id": self.context.pass_id,
                    "batch_key": self.context.batch_key,
                    "attempt": self.context.attempt,
                    "transfer_ref": self.context.transfer_ref,
                },
            }
        }


# ─── Startup Errors ─────────────────────────────────────────────

class ConfigurationError(DistributorError):
    """Settings or signing credential invalid — fatal before the first pass."""
    def __init__(self, message: str, setting: str, context: ErrorContext | None = None):
        super().__init__(
            message, "CONFIGURATION_ERROR", ErrorCategory.CONFIGURATION,
            ErrorSeverity.CRITICAL, context, 500,
        )
        self.setting = setting


# ─── External Network Errors ────────────────────────────────────

class TransientNetworkError(DistributorError):
    """Connection failure, 5xx, or transport timeout — retryable within the batch budget."""

    retryable = True

    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Transient network failure during {operation}: {message}",
            "TRANSIENT_NETWORK_ERROR", ErrorCategory.EXTERNAL_NETWORK,
            ErrorSeverity.WARNING, context, 503,
        )
        self.operation = operation


class RetriesExhaustedError(DistributorError):
    """A batch spent its whole retry budget on transient failures."""
    def __init__(
        self, attempts: int, last_error: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Batch failed after {attempts} attempts: {last_error}",
            "RETRIES_EXHAUSTED", ErrorCategory.EXTERNAL_NETWORK,
            ErrorSeverity.ERROR, context, 503,
        )
        self.attempts = attempts


class RejectedTransferError(DistributorError):
    """The network refused the transfer — never retried."""
    def __init__(self, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Transfer rejected: {reason}",
            "TRANSFER_REJECTED", ErrorCategory.EXTERNAL_NETWORK,
            ErrorSeverity.ERROR, context, 502,
        )
        self.reason = reason


class TimedOutAmbiguousError(DistributorError):
    """Transfer outcome unknown — must be reconciled by idempotency key, never resent blindly."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "TRANSFER_OUTCOME_UNKNOWN", ErrorCategory.AMBIGUOUS,
            ErrorSeverity.CRITICAL, context, 504,
        )


# ─── Persistence Errors ─────────────────────────────────────────

class PersistenceError(DistributorError):
    """Local database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            "PERSISTENCE_ERROR", ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL, context, 503,
        )
        self.operation = operation


# ─── Concurrency / Invariant Errors ─────────────────────────────

class LeaseLostError(DistributorError):
    """The worker lease is held by someone else (or expired and was taken over)."""
    def __init__(self, holder_id: str, context: ErrorContext | None = None):
        super().__init__(
            f"Worker lease no longer held by '{holder_id}'",
            "LEASE_LOST", ErrorCategory.CONFLICT,
            ErrorSeverity.ERROR, context, 409,
        )
        self.holder_id = holder_id


class CursorRegressionError(DistributorError):
    """Attempted to append a watermark lower than the latest one."""
    def __init__(self, latest: int, proposed: int, context: ErrorContext | None = None):
        super().__init__(
            f"Cursor cannot move backwards ({latest} -> {proposed})",
            "CURSOR_REGRESSION", ErrorCategory.INVARIANT,
            ErrorSeverity.CRITICAL, context, 500,
        )
        self.latest = latest
        self.proposed = proposed


class InvalidPassTransition(DistributorError):
    """Driver state machine asked to make an illegal move."""
    def __init__(self, old: str, new: str, context: ErrorContext | None = None):
        super().__init__(
            f"Illegal pass transition: {old} -> {new}",
            "INVALID_PASS_TRANSITION", ErrorCategory.INTERNAL,
            ErrorSeverity.CRITICAL, context, 500,
        )
