"""Pass State — driver state machine, per-pass report, and rolling pass statistics.

Invariants:
    - Transitions: idle -> running -> {committed, aborted} -> idle; anything
      else raises InvalidPassTransition
    - A NOOP pass ends in the committed state: it finished cleanly with
      nothing to write; its PassReport outcome says NOOP
    - A PassReport is immutable once finished
    - PassStats.consecutive_aborts resets only on a COMMITTED or NOOP pass;
      SKIPPED passes leave it unchanged

Design Decisions:
    - PassStats lives in memory, per process: it feeds the status endpoint and
      the logs; durable history is the cursor table itself
    - NOOP and COMMITTED are counted separately so an idle ledger never looks
      like a stuck one, and repeated aborts never look like an idle ledger
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from fee_distributor.core.domain_types import EventId, PassOutcome, PassState
from fee_distributor.core.errors import InvalidPassTransition

ALLOWED: dict[PassState, set[PassState]] = {
    PassState.IDLE: {PassState.RUNNING},
    PassState.RUNNING: {PassState.COMMITTED, PassState.ABORTED},
    PassState.COMMITTED: {PassState.IDLE},
    PassState.ABORTED: {PassState.IDLE},
}


def assert_transition(old: PassState, new: PassState) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidPassTransition(old.value, new.value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PassReport:
    """What one triggered pass did — returned by the driver and logged."""
    pass_id: str
    outcome: PassOutcome
    cursor_before: EventId | None = None
    cursor_after: EventId | None = None
    payouts: int = 0
    batches: int = 0
    deferred: int = 0
    unmapped_events: int = 0
    error_code: str | None = None
    error_message: str | None = None
    skip_reason: str | None = None
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "pass_id": self.pass_id,
            "outcome": self.outcome.value,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "payouts": self.payouts,
            "batches": self.batches,
            "deferred": self.deferred,
            "unmapped_events": self.unmapped_events,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "skip_reason": self.skip_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class PassStats:
    """Rolling counters over every pass this process has triggered."""
    committed: int = 0
    noop: int = 0
    aborted: int = 0
    skipped: int = 0
    consecutive_aborts: int = 0
    last_report: PassReport | None = None
    last_success_at: datetime | None = None
    last_error_code: str | None = None

    def record(self, report: PassReport) -> None:
        self.last_report = report
        if report.outcome == PassOutcome.SKIPPED:
            self.skipped += 1
            return
        if report.outcome == PassOutcome.ABORTED:
            self.aborted += 1
            self.consecutive_aborts += 1
            self.last_error_code = report.error_code
            return
        if report.outcome == PassOutcome.COMMITTED:
            self.committed += 1
        else:
            self.noop += 1
        self.consecutive_aborts = 0
        self.last_success_at = report.finished_at or _utc_now()

    def to_dict(self) -> dict:
        return {
            "committed": self.committed,
            "noop": self.noop,
            "aborted": self.aborted,
            "skipped": self.skipped,
            "consecutive_aborts": self.consecutive_aborts,
            "last_error_code": self.last_error_code,
            "last_success_at": (
                self.last_success_at.isoformat() if self.last_success_at else None
            ),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
