"""Batch Outbox — durable per-batch markers and the atomic bookkeeping write.

Invariants:
    - open() creates the marker (PENDING) before anything is sent to the network
    - mark_attempt() stores the handle expiry before submit; mark_submitted()
      stores the transfer ref before the confirmation wait
    - record() is the single atomic unit: DistributionRecords + AccountBalance
      increments + marker RECORDED. Replaying it for a RECORDED marker is a no-op
    - paid_since() only counts RECORDED markers sourced from the given cursor

Design Decisions:
    - Marker payload is the exact batch (recipients + amounts) so a confirmed
      transfer can be recorded later without re-running aggregation
    - Balances are updated in Python from the locked row: amount arithmetic never
      happens in SQL (see db/types.Amount)
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fee_distributor.core.aggregation import group_quantities
from fee_distributor.core.batching import batch_from_json, batch_to_json
from fee_distributor.core.domain_types import (
    BatchStatus,
    EventId,
    ExecutedPayout,
    IdempotencyKey,
    Payout,
    RecipientAddress,
    TransferRef,
)
from fee_distributor.core.errors import PersistenceError
from fee_distributor.infrastructure.database import DatabaseSessionManager
from fee_distributor.models.account_balance import AccountBalance
from fee_distributor.models.batch_marker import BatchMarker
from fee_distributor.models.distribution import DistributionRecord

logger = logging.getLogger(__name__)

FINAL_STATUSES = (BatchStatus.RECORDED.value, BatchStatus.COMMITTED.value)
UNRESOLVED_STATUSES = (
    BatchStatus.PENDING.value,
    BatchStatus.SUBMITTED.value,
    BatchStatus.CONFIRMED.value,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything here is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class BatchOutbox:
    """Repository for batch markers and distribution bookkeeping."""

    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def get(self, key: IdempotencyKey) -> BatchMarker | None:
        async with self._db.session() as s:
            return await s.get(BatchMarker, key)

    async def open(
        self, key: IdempotencyKey, source_cursor: EventId, batch: Sequence[Payout],
    ) -> tuple[BatchMarker, bool]:
        """Return (marker, created). A FAILED marker is reopened as PENDING."""
        async with self._db.transaction() as s:
            marker = await s.get(BatchMarker, key, with_for_update=True)
            if marker is None:
                marker = BatchMarker(
                    idempotency_key=key,
                    source_cursor=int(source_cursor),
                    payload=batch_to_json(batch),
                    status=BatchStatus.PENDING.value,
                    attempts=0,
                )
                s.add(marker)
                return marker, True
            if marker.status == BatchStatus.FAILED.value:
                marker.status = BatchStatus.PENDING.value
                marker.updated_at = _utc_now()
            return marker, False

    async def mark_attempt(
        self, key: IdempotencyKey, attempt: int, handle_expires_at: datetime | None,
    ) -> None:
        await self._update(
            key, attempts=attempt, handle_expires_at=handle_expires_at,
        )

    async def mark_submitted(self, key: IdempotencyKey, ref: TransferRef) -> None:
        await self._update(
            key, status=BatchStatus.SUBMITTED.value, transfer_ref=ref,
        )

    async def mark_confirmed(self, key: IdempotencyKey, ref: TransferRef) -> None:
        await self._update(
            key, status=BatchStatus.CONFIRMED.value, transfer_ref=ref,
        )

    async def mark_failed(self, key: IdempotencyKey, error: str) -> None:
        await self._update(
            key, status=BatchStatus.FAILED.value, last_error=error[:2000],
        )

    async def _update(self, key: IdempotencyKey, **fields) -> None:
        async with self._db.transaction() as s:
            marker = await s.get(BatchMarker, key, with_for_update=True)
            if marker is None:
                raise PersistenceError(f"batch marker {key} not found", "update")
            if marker.status in FINAL_STATUSES:
                logger.warning(
                    f"Ignoring update of finalized batch marker ({marker.status})",
                    extra={"batch_key": key},
                )
                return
            for name, value in fields.items():
                setattr(marker, name, value)
            marker.updated_at = _utc_now()

    async def record(
        self, key: IdempotencyKey, ref: TransferRef,
    ) -> list[ExecutedPayout]:
        """Atomically write distributions + balances for a confirmed transfer."""
        async with self._db.transaction() as s:
            marker = await s.get(BatchMarker, key, with_for_update=True)
            if marker is None:
                raise PersistenceError(f"batch marker {key} not found", "record")
            if marker.status in FINAL_STATUSES:
                return await self._executed(s, key)

            now = _utc_now()
            executed = []
            for payout in batch_from_json(marker.payload):
                s.add(DistributionRecord(
                    recipient_address=payout.recipient,
                    transfer_ref=ref,
                    amount=payout.amount,
                    batch_key=key,
                    created_at=now,
                ))
                balance = await s.get(
                    AccountBalance, payout.recipient, with_for_update=True,
                )
                if balance is None:
                    s.add(AccountBalance(
                        recipient_address=payout.recipient,
                        total_claimed=payout.amount,
                        updated_at=now,
                    ))
                else:
                    balance.total_claimed = balance.total_claimed + payout.amount
                    balance.updated_at = now
                executed.append(ExecutedPayout(payout.recipient, payout.amount, ref))

            marker.status = BatchStatus.RECORDED.value
            marker.transfer_ref = ref
            marker.updated_at = now
        logger.info(
            f"Recorded {len(executed)} distributions",
            extra={"batch_key": key, "transfer_ref": ref, "recipients": len(executed)},
        )
        return executed

    async def recorded_payouts(self, key: IdempotencyKey) -> list[ExecutedPayout]:
        async with self._db.session() as s:
            return await self._executed(s, key)

    async def _executed(self, s: AsyncSession, key: IdempotencyKey) -> list[ExecutedPayout]:
        result = await s.execute(
            select(DistributionRecord)
            .where(DistributionRecord.batch_key == key)
            .order_by(DistributionRecord.recipient_address),
        )
        return [
            ExecutedPayout(
                RecipientAddress(r.recipient_address), r.amount,
                TransferRef(r.transfer_ref),
            )
            for r in result.scalars()
        ]

    async def unresolved(self) -> list[BatchMarker]:
        async with self._db.session() as s:
            result = await s.execute(
                select(BatchMarker)
                .where(BatchMarker.status.in_(UNRESOLVED_STATUSES))
                .order_by(BatchMarker.created_at),
            )
            return list(result.scalars())

    async def paid_since(self, source_cursor: EventId) -> dict[RecipientAddress, Decimal]:
        """Amounts already paid by batches of the not-yet-committed window."""
        async with self._db.session() as s:
            result = await s.execute(
                select(DistributionRecord.recipient_address, DistributionRecord.amount)
                .join(
                    BatchMarker,
                    BatchMarker.idempotency_key == DistributionRecord.batch_key,
                )
                .where(
                    BatchMarker.source_cursor == int(source_cursor),
                    BatchMarker.status == BatchStatus.RECORDED.value,
                ),
            )
            return group_quantities(
                (RecipientAddress(r.recipient_address), r.amount) for r in result
            )
