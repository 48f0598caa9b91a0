"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - EventId, RecipientAddress, TransferRef, IdempotencyKey wrap primitives —
      never mix a bare int/str with a typed id in domain logic
    - Amounts are always Decimal, never float
    - All valid states encoded as Enums — no raw string matching

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: persisted as-is in String columns and serialized without custom encoders
    - Frozen dataclasses for values crossing component boundaries (Payout, ...)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

EventId = NewType("EventId", int)
RecipientAddress = NewType("RecipientAddress", str)
TransferRef = NewType("TransferRef", str)
IdempotencyKey = NewType("IdempotencyKey", str)


# ─── Enums ───────────────────────────────────────────────────────

class TransferStatus(str, Enum):
    """Outcome of awaiting a submitted transfer."""
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class BatchStatus(str, Enum):
    """Batch marker lifecycle — maps to batch_markers.status.

    PENDING -> SUBMITTED -> CONFIRMED -> RECORDED -> COMMITTED
    PENDING | SUBMITTED -> FAILED
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    RECORDED = "recorded"
    FAILED = "failed"
    COMMITTED = "committed"


class PassState(str, Enum):
    """Reconciliation driver state machine."""
    IDLE = "idle"
    RUNNING = "running"
    COMMITTED = "committed"
    ABORTED = "aborted"


class PassOutcome(str, Enum):
    """How a triggered pass ended — what monitoring counts."""
    COMMITTED = "committed"
    NOOP = "noop"
    ABORTED = "aborted"
    SKIPPED = "skipped"


# ─── Value Types ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Payout:
    """Amount owed to one recipient, already floored to the transferable unit."""
    recipient: RecipientAddress
    amount: Decimal


@dataclass(frozen=True)
class ExecutedPayout:
    """Payout durably recorded against a confirmed transfer."""
    recipient: RecipientAddress
    amount: Decimal
    transfer_ref: TransferRef


@dataclass(frozen=True)
class SequencingHandle:
    """Freshness-bounded handle the network requires on each submission."""
    value: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TransferInstruction:
    """One recipient line of a transfer request, in base units."""
    recipient: RecipientAddress
    units: int


@dataclass(frozen=True)
class TransferPayload:
    """Everything the network needs to post one batch."""
    idempotency_key: IdempotencyKey
    handle: SequencingHandle
    instructions: tuple[TransferInstruction, ...]


@dataclass(frozen=True)
class ConfirmationResult:
    status: TransferStatus
    reason: str | None = None


@dataclass(frozen=True)
class AggregationResult:
    """Output of one aggregation over the window (since_cursor, observed_max_id]."""
    since_cursor: EventId
    observed_max_id: EventId | None
    payouts: tuple[Payout, ...] = ()
    deferred: dict[RecipientAddress, Decimal] = field(default_factory=dict)
    event_count: int = 0
    unmapped_event_count: int = 0

    @property
    def has_events(self) -> bool:
        return self.observed_max_id is not None

    @property
    def total_payable(self) -> Decimal:
        return sum((p.amount for p in self.payouts), Decimal("0"))
