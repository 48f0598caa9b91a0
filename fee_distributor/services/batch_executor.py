"""Batch Payment Executor — submits payout batches and records confirmed transfers.

Invariants:
    - Every batch carries a deterministic idempotency key; before any
      resubmission the network history is searched for that key, and a posted
      transfer found there is used instead of sending a new one
    - Transient failures and timeouts are retried up to max_retries attempts
      with a fixed delay; a rejection is never retried
    - A fresh sequencing handle is fetched for every attempt
    - After a confirmation only the local write is retried, keyed by the known
      transfer ref; a confirmed batch is never resubmitted
    - A batch whose marker is already RECORDED is skipped, not repaid
    - A batch is marked FAILED only when no submit can have posted: none was
      attempted, or the handle of the last one has expired

Design Decisions:
    - Outbox ordering: marker PENDING -> handle expiry stored -> submit ->
      transfer ref stored -> confirm -> atomic record. A crash at any point
      leaves a marker that recover_unresolved() can settle on the next pass
    - Ambiguity is resolved against network history, never by guessing: an
      unresolved marker blocks the pass (TimedOutAmbiguousError) until the
      network can answer
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fee_distributor.core.batching import (
    batch_from_json,
    build_transfer_payload,
    chunk_payouts,
    idempotency_key,
)
from fee_distributor.core.domain_types import (
    BatchStatus,
    EventId,
    ExecutedPayout,
    IdempotencyKey,
    Payout,
    SequencingHandle,
    TransferRef,
    TransferStatus,
)
from fee_distributor.core.errors import (
    ErrorContext,
    PersistenceError,
    RejectedTransferError,
    RetriesExhaustedError,
    TimedOutAmbiguousError,
    TransientNetworkError,
)
from fee_distributor.core.repository_protocols import Signer, TransferNetwork
from fee_distributor.services.batch_outbox import BatchOutbox, as_utc

logger = logging.getLogger(__name__)

Heartbeat = Callable[[], Awaitable[None]]


class BatchExecutor:
    """Executes payouts through the transfer network in bounded batches."""

    def __init__(
        self,
        outbox: BatchOutbox,
        network: TransferNetwork,
        credential: Signer,
        *,
        batch_size: int = 10,
        fee_adjustment: Decimal = Decimal("0.99"),
        decimals: int = 9,
        max_retries: int = 3,
        retry_delay_seconds: float = 2.0,
        confirm_timeout_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.outbox = outbox
        self.network = network
        self.credential = credential
        self.batch_size = batch_size
        self.fee_adjustment = fee_adjustment
        self.decimals = decimals
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self._sleep = sleep

    async def execute(
        self,
        payouts: Sequence[Payout],
        source_cursor: EventId,
        *,
        through: EventId | None = None,
        pass_id: str | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> list[ExecutedPayout]:
        """Pay every batch in order; the first unrecoverable failure propagates."""
        executed: list[ExecutedPayout] = []
        batches = chunk_payouts(payouts, self.batch_size)
        for index, batch in enumerate(batches, start=1):
            logger.info(
                f"Executing batch {index}/{len(batches)} ({len(batch)} recipients)",
                extra={"pass_id": pass_id, "recipients": len(batch)},
            )
            executed.extend(await self.execute_batch(
                batch, source_cursor,
                through=through, pass_id=pass_id, heartbeat=heartbeat,
            ))
        return executed

    async def execute_batch(
        self,
        batch: Sequence[Payout],
        source_cursor: EventId,
        *,
        through: EventId | None = None,
        pass_id: str | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> list[ExecutedPayout]:
        key = idempotency_key(source_cursor, batch, through)
        ctx = ErrorContext(pass_id=pass_id, batch_key=key)
        marker, created = await self.outbox.open(key, source_cursor, batch)

        if marker.status in (BatchStatus.RECORDED.value, BatchStatus.COMMITTED.value):
            logger.info(
                "Batch already recorded; skipping",
                extra={"pass_id": pass_id, "batch_key": key},
            )
            return await self.outbox.recorded_payouts(key)
        if marker.status == BatchStatus.CONFIRMED.value and marker.transfer_ref:
            return await self._record(key, TransferRef(marker.transfer_ref), ctx)

        ref = await self._transfer(
            key, batch, ctx, check_history=not created, heartbeat=heartbeat,
        )
        return await self._record(key, ref, ctx)

    # ─── Network round-trip ─────────────────────────────────────

    async def _transfer(
        self,
        key: IdempotencyKey,
        batch: Sequence[Payout],
        ctx: ErrorContext,
        *,
        check_history: bool,
        heartbeat: Heartbeat | None,
    ) -> TransferRef:
        last_error: Exception | None = None
        submitted = False
        sent_under: SequencingHandle | None = None

        for attempt in range(1, self.max_retries + 1):
            ctx.attempt = attempt
            if heartbeat:
                await heartbeat()
            try:
                if check_history or attempt > 1:
                    existing = await self.network.find_transfer(key)
                    if existing:
                        logger.warning(
                            "Transfer for batch already posted; not resubmitting",
                            extra={"batch_key": key, "transfer_ref": existing,
                                   "attempt": attempt},
                        )
                        await self.outbox.mark_confirmed(key, existing)
                        return existing

                handle = await self.network.get_sequencing_handle()
                await self.outbox.mark_attempt(key, attempt, handle.expires_at)
                payload = build_transfer_payload(
                    key, handle, batch,
                    decimals=self.decimals, fee_adjustment=self.fee_adjustment,
                )
                sent_under = handle
                ref = await self.network.submit_transfer(payload, self.credential)
                submitted = True
                ctx.transfer_ref = ref
                await self.outbox.mark_submitted(key, ref)
                result = await self.network.confirm_transfer(
                    ref, handle, self.confirm_timeout_seconds,
                )
            except TransientNetworkError as e:
                last_error = e
                logger.warning(
                    f"Transient failure on attempt {attempt}/{self.max_retries}: {e.message}",
                    extra={"batch_key": key, "attempt": attempt,
                           "error_code": e.code},
                )
                await self._pause(attempt)
                continue

            if result.status == TransferStatus.CONFIRMED:
                logger.info(
                    "Batch transfer confirmed",
                    extra={"batch_key": key, "transfer_ref": ref, "attempt": attempt},
                )
                return ref

            if result.status == TransferStatus.REJECTED:
                reason = result.reason or "rejected by network"
                await self.outbox.mark_failed(key, reason)
                raise RejectedTransferError(reason, ctx)

            last_error = TimedOutAmbiguousError(
                f"Confirmation timed out for transfer {ref}", ctx,
            )
            logger.warning(
                f"Confirmation timed out on attempt {attempt}/{self.max_retries}",
                extra={"batch_key": key, "transfer_ref": ref, "attempt": attempt},
            )
            await self._pause(attempt)

        return await self._settle_exhausted(
            key, ctx, submitted=submitted, sent_under=sent_under, last_error=last_error,
        )

    async def _settle_exhausted(
        self,
        key: IdempotencyKey,
        ctx: ErrorContext,
        *,
        submitted: bool,
        sent_under: SequencingHandle | None,
        last_error: Exception | None,
    ) -> TransferRef:
        """Out of attempts: one last history lookup before giving up.

        A submit that raised may still have posted (the response can be lost
        after the gateway accepted it). Until the handle it was sent under
        expires, such a batch stays unresolved instead of FAILED.
        """
        try:
            existing = await self.network.find_transfer(key)
        except TransientNetworkError:
            existing = None
        if existing:
            await self.outbox.mark_confirmed(key, existing)
            return existing

        if submitted or (
            sent_under is not None
            and not self._definitely_unposted(sent_under.expires_at, None)
        ):
            raise TimedOutAmbiguousError(
                f"Batch outcome unknown after {self.max_retries} attempts; "
                "left for reconciliation by idempotency key",
                ctx,
            )
        message = str(last_error) if last_error else "no attempt succeeded"
        await self.outbox.mark_failed(key, message)
        raise RetriesExhaustedError(self.max_retries, message, ctx)

    async def _pause(self, attempt: int) -> None:
        if attempt < self.max_retries and self.retry_delay_seconds:
            await self._sleep(self.retry_delay_seconds)

    # ─── Local bookkeeping ──────────────────────────────────────

    async def _record(
        self, key: IdempotencyKey, ref: TransferRef, ctx: ErrorContext,
    ) -> list[ExecutedPayout]:
        """Retry only the local write; the transfer itself is done."""
        ctx.transfer_ref = ref
        last: PersistenceError | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.outbox.record(key, ref)
            except PersistenceError as e:
                last = e
                logger.error(
                    f"Recording confirmed transfer failed (attempt {attempt}/{self.max_retries})",
                    extra={"batch_key": key, "transfer_ref": ref, "attempt": attempt},
                )
                await self._pause(attempt)

        try:
            await self.outbox.mark_confirmed(key, ref)
        except PersistenceError:
            logger.error(
                "Could not mark batch CONFIRMED; network history will settle it",
                extra={"batch_key": key, "transfer_ref": ref},
            )
        raise PersistenceError(
            f"confirmed transfer {ref} not recorded: {last.message if last else ''}",
            "record",
            ctx,
        )

    # ─── Recovery ───────────────────────────────────────────────

    async def recover_unresolved(self, pass_id: str | None = None) -> int:
        """Settle markers left by crashed or aborted passes. Returns how many were recorded."""
        recorded = 0
        for marker in await self.outbox.unresolved():
            key = IdempotencyKey(marker.idempotency_key)
            ctx = ErrorContext(pass_id=pass_id, batch_key=key)

            if marker.status == BatchStatus.CONFIRMED.value and marker.transfer_ref:
                await self._record(key, TransferRef(marker.transfer_ref), ctx)
                recorded += 1
                continue

            if marker.status == BatchStatus.PENDING.value and marker.attempts == 0:
                await self.outbox.mark_failed(key, "never submitted")
                continue

            existing = await self.network.find_transfer(key)
            if existing:
                logger.warning(
                    "Recovered posted transfer for unresolved batch",
                    extra={"pass_id": pass_id, "batch_key": key,
                           "transfer_ref": existing},
                )
                await self.outbox.mark_confirmed(key, existing)
                await self._record(key, existing, ctx)
                recorded += 1
                continue

            if self._definitely_unposted(marker.handle_expires_at, marker.updated_at):
                await self.outbox.mark_failed(key, "not in network history after handle expiry")
                logger.info(
                    "Unresolved batch never posted; released for resubmission",
                    extra={"pass_id": pass_id, "batch_key": key,
                           "recipients": len(batch_from_json(marker.payload))},
                )
                continue

            raise TimedOutAmbiguousError(
                "Batch outcome still unknown; waiting for sequencing handle expiry",
                ctx,
            )
        return recorded

    def _definitely_unposted(
        self, handle_expires_at: datetime | None, updated_at: datetime | None,
    ) -> bool:
        now = datetime.now(timezone.utc)
        expires = as_utc(handle_expires_at)
        if expires is not None:
            return expires < now
        last_touch = as_utc(updated_at)
        if last_touch is None:
            return False
        return last_touch + timedelta(seconds=self.confirm_timeout_seconds) < now
