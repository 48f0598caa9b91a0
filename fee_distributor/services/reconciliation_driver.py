"""Reconciliation Driver — runs one full pass: snapshot, aggregate, execute, commit.

Invariants:
    - Single flight in-process: a trigger arriving while a pass runs is skipped
      and logged, never queued
    - Single flight across processes: a pass runs only while this worker holds
      the durable lease; the lease is renewed before every batch attempt
    - The cursor commits to the observed_max_id of this pass's aggregation,
      never to a later re-read, and only after every batch was recorded
    - Any failure leaves the cursor untouched, is logged with its error code,
      and is returned in the PassReport; run_pass() itself never raises

Design Decisions:
    - recover_unresolved() runs first: markers left by an aborted pass are
      settled against network history before anything new is aggregated
    - asyncio.Lock as the in-process flag: acquiring an unlocked Lock does not
      yield, so check-then-enter cannot interleave with another trigger
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from functools import partial

from fee_distributor.config import Settings
from fee_distributor.core.domain_types import (
    AggregationResult,
    EventId,
    PassOutcome,
    PassState,
)
from fee_distributor.core.errors import DistributorError
from fee_distributor.core.pass_state import PassReport, PassStats, assert_transition
from fee_distributor.core.repository_protocols import Signer, TransferNetwork
from fee_distributor.infrastructure.database import DatabaseSessionManager
from fee_distributor.infrastructure.observability import pass_context
from fee_distributor.services.batch_executor import BatchExecutor
from fee_distributor.services.batch_outbox import BatchOutbox
from fee_distributor.services.cursor_store import CursorStore
from fee_distributor.services.ledger_aggregator import LedgerAggregator

logger = logging.getLogger(__name__)


class ReconciliationDriver:
    """Orchestrates reconciliation passes under a single-flight guarantee."""

    def __init__(
        self,
        cursor_store: CursorStore,
        aggregator: LedgerAggregator,
        executor: BatchExecutor,
        *,
        worker_id: str,
        lease_ttl_seconds: float = 120.0,
        stats: PassStats | None = None,
    ):
        self.cursor_store = cursor_store
        self.aggregator = aggregator
        self.executor = executor
        self.worker_id = worker_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self.stats = stats or PassStats()
        self.state = PassState.IDLE
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_pass(self) -> PassReport:
        report = PassReport(pass_id=uuid.uuid4().hex[:12], outcome=PassOutcome.SKIPPED)
        with pass_context(pass_id=report.pass_id):
            return await self._single_flight(report)

    async def _single_flight(self, report: PassReport) -> PassReport:
        if self._lock.locked():
            report.skip_reason = "pass_in_progress"
            logger.warning(
                "Previous pass still running; trigger skipped",
                extra={"pass_id": report.pass_id, "outcome": report.outcome.value},
            )
            return self._finish(report)

        async with self._lock:
            try:
                acquired = await self.cursor_store.acquire_lease(
                    self.worker_id, self.lease_ttl_seconds,
                )
            except DistributorError as e:
                self._abort(report, e)
                return self._finish(report)
            if not acquired:
                report.skip_reason = "lease_held"
                logger.info(
                    "Lease held by another worker; trigger skipped",
                    extra={"pass_id": report.pass_id, "holder_id": self.worker_id},
                )
                return self._finish(report)

            self._transition(PassState.RUNNING)
            try:
                await self._run(report)
                # NOOP included: a clean pass with nothing to write
                self._transition(PassState.COMMITTED)
            except Exception as e:
                self._transition(PassState.ABORTED)
                self._abort(report, e)
            finally:
                await self._release()
                self._transition(PassState.IDLE)
        return self._finish(report)

    async def _run(self, report: PassReport) -> None:
        heartbeat = partial(
            self.cursor_store.renew_lease, self.worker_id, self.lease_ttl_seconds,
        )
        recovered = await self.executor.recover_unresolved(report.pass_id)
        if recovered:
            logger.info(
                f"Recovered {recovered} batches from a previous pass",
                extra={"pass_id": report.pass_id},
            )

        cursor = await self.cursor_store.get_latest()
        report.cursor_before = cursor
        since = cursor if cursor is not None else EventId(0)

        result: AggregationResult = await self.aggregator.aggregate(since)
        report.payouts = len(result.payouts)
        report.deferred = len(result.deferred)
        report.unmapped_events = result.unmapped_event_count
        if not result.has_events:
            report.outcome = PassOutcome.NOOP
            report.cursor_after = cursor
            logger.info(
                "No new ledger events",
                extra={"pass_id": report.pass_id, "outcome": report.outcome.value,
                       "cursor": cursor},
            )
            return

        executed = await self.executor.execute(
            result.payouts, since,
            through=result.observed_max_id,
            pass_id=report.pass_id,
            heartbeat=heartbeat,
        )
        report.batches = -(-len(result.payouts) // self.executor.batch_size)

        await self.cursor_store.commit_pass(
            result.observed_max_id, result.deferred, self.worker_id, since,
        )
        report.cursor_after = result.observed_max_id
        report.outcome = PassOutcome.COMMITTED
        logger.info(
            f"Pass committed: {len(executed)} payouts totalling {result.total_payable} "
            f"in {report.batches} batches, "
            f"cursor {cursor} -> {result.observed_max_id}",
            extra={"pass_id": report.pass_id, "outcome": report.outcome.value,
                   "cursor": int(result.observed_max_id)},
        )

    def _abort(self, report: PassReport, error: Exception) -> None:
        report.outcome = PassOutcome.ABORTED
        if isinstance(error, DistributorError):
            error.context.pass_id = error.context.pass_id or report.pass_id
            report.error_code = error.code
            report.error_message = error.message
            logger.error(
                f"Pass aborted: {error.message}",
                extra={"pass_id": report.pass_id, "error_code": error.code,
                       "batch_key": error.context.batch_key,
                       "transfer_ref": error.context.transfer_ref,
                       "outcome": report.outcome.value},
            )
        else:
            report.error_code = "INTERNAL_ERROR"
            report.error_message = str(error)
            logger.error(
                f"Pass aborted by unexpected error: {error}",
                exc_info=error,
                extra={"pass_id": report.pass_id, "error_code": "INTERNAL_ERROR",
                       "outcome": report.outcome.value},
            )

    async def _release(self) -> None:
        try:
            await self.cursor_store.release_lease(self.worker_id)
        except DistributorError as e:
            logger.warning(
                f"Lease release failed; it will expire on its own: {e.message}",
                extra={"holder_id": self.worker_id, "error_code": e.code},
            )

    def _transition(self, new: PassState) -> None:
        assert_transition(self.state, new)
        self.state = new

    def _finish(self, report: PassReport) -> PassReport:
        report.finished_at = datetime.now(timezone.utc)
        self.stats.record(report)
        if self.stats.consecutive_aborts > 1 and report.outcome == PassOutcome.ABORTED:
            logger.error(
                f"{self.stats.consecutive_aborts} consecutive aborted passes",
                extra={"error_code": report.error_code, "outcome": report.outcome.value},
            )
        return report


def build_driver(
    settings: Settings,
    db: DatabaseSessionManager,
    network: TransferNetwork,
    credential: Signer,
) -> ReconciliationDriver:
    """Wire the pass components from settings."""
    outbox = BatchOutbox(db)
    cursor_store = CursorStore(db, lease_name=settings.lease_name)
    aggregator = LedgerAggregator(
        db, outbox,
        fee_rate=settings.fee_rate,
        min_payable=settings.min_payable,
        decimals=settings.amount_decimals,
    )
    executor = BatchExecutor(
        outbox, network, credential,
        batch_size=settings.batch_size,
        fee_adjustment=settings.fee_adjustment,
        decimals=settings.amount_decimals,
        max_retries=settings.max_retries,
        retry_delay_seconds=settings.retry_delay_seconds,
        confirm_timeout_seconds=settings.confirm_timeout_seconds,
    )
    return ReconciliationDriver(
        cursor_store, aggregator, executor,
        worker_id=settings.worker_id,
        lease_ttl_seconds=settings.lease_ttl_seconds,
    )
