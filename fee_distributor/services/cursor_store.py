"""Cursor Store — durable watermark plus the cross-instance worker lease.

Invariants:
    - append() never rewrites history and refuses a lower value (CursorRegressionError)
    - get_latest() reads the latest row by (recorded_at, seq)
    - Lease ownership changes only through a conditional UPDATE (compare-and-swap);
      the first holder inserts the row, and a lost insert race means "not acquired"
    - commit_pass() is one transaction: lease check, cursor append, carried
      balance rewrite, RECORDED -> COMMITTED batch markers

Design Decisions:
    - Lease expiry comparisons happen in SQL, never against Python-side datetimes
      read back from the DB
    - commit_pass re-checks the lease inside the commit transaction: a worker
      whose lease expired mid-pass cannot move the cursor
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fee_distributor.core.domain_types import BatchStatus, EventId, RecipientAddress
from fee_distributor.core.errors import CursorRegressionError, LeaseLostError
from fee_distributor.infrastructure.database import DatabaseSessionManager
from fee_distributor.models.batch_marker import BatchMarker
from fee_distributor.models.carried_balance import CarriedBalance
from fee_distributor.models.cursor import Cursor
from fee_distributor.models.worker_lease import WorkerLease

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CursorStore:
    """Last-processed event id, append-only, with a compare-and-swap lease."""

    def __init__(self, db: DatabaseSessionManager, lease_name: str = "fee-distribution"):
        self._db = db
        self.lease_name = lease_name

    # ─── Watermark ──────────────────────────────────────────────

    async def get_latest(self) -> EventId | None:
        async with self._db.session() as s:
            return await self._latest(s)

    async def append(self, new_value: EventId) -> None:
        async with self._db.transaction() as s:
            await self._append(s, new_value)

    async def _latest(self, s: AsyncSession) -> EventId | None:
        result = await s.execute(
            select(Cursor.value)
            .order_by(Cursor.recorded_at.desc(), Cursor.seq.desc())
            .limit(1),
        )
        value = result.scalar_one_or_none()
        return EventId(value) if value is not None else None

    async def _append(self, s: AsyncSession, new_value: EventId) -> None:
        latest = await self._latest(s)
        if latest is not None and new_value < latest:
            raise CursorRegressionError(latest, new_value)
        s.add(Cursor(value=int(new_value), recorded_at=_utc_now()))

    # ─── Pass commit ────────────────────────────────────────────

    async def commit_pass(
        self,
        new_value: EventId,
        carried: Mapping[RecipientAddress, Decimal],
        holder_id: str,
        source_cursor: EventId,
    ) -> None:
        """Durably close a pass: the cursor moves only with its carried balances."""
        async with self._db.transaction() as s:
            await self._assert_lease(s, holder_id)
            await self._append(s, new_value)
            await s.execute(delete(CarriedBalance))
            now = _utc_now()
            for recipient, amount in carried.items():
                s.add(CarriedBalance(
                    recipient_address=recipient, amount=amount,
                    through_event_id=int(new_value), updated_at=now,
                ))
            await s.execute(
                update(BatchMarker)
                .where(
                    BatchMarker.source_cursor == int(source_cursor),
                    BatchMarker.status == BatchStatus.RECORDED.value,
                )
                .values(status=BatchStatus.COMMITTED.value, updated_at=now),
            )
        logger.info(
            f"Cursor committed at {new_value} ({len(carried)} carried balances)",
            extra={"cursor": int(new_value), "holder_id": holder_id},
        )

    async def carried_balances(self) -> dict[RecipientAddress, Decimal]:
        async with self._db.session() as s:
            result = await s.execute(select(CarriedBalance))
            return {
                RecipientAddress(row.recipient_address): row.amount
                for row in result.scalars()
            }

    # ─── Lease ──────────────────────────────────────────────────

    async def acquire_lease(self, holder_id: str, ttl_seconds: float) -> bool:
        """Take the lease if free, expired, or already ours. False if someone else holds it."""
        now = _utc_now()
        expires = now + timedelta(seconds=ttl_seconds)
        async with self._db.transaction() as s:
            result = await s.execute(
                update(WorkerLease)
                .where(
                    WorkerLease.name == self.lease_name,
                    or_(
                        WorkerLease.holder_id == holder_id,
                        WorkerLease.expires_at < now,
                    ),
                )
                .values(holder_id=holder_id, expires_at=expires, acquired_at=now),
            )
            if result.rowcount == 1:
                return True
            exists = await s.scalar(
                select(WorkerLease.name).where(WorkerLease.name == self.lease_name),
            )
            if exists is not None:
                return False
        return await self._insert_lease(holder_id, now, expires)

    async def _insert_lease(
        self, holder_id: str, now: datetime, expires: datetime,
    ) -> bool:
        async with self._db.session() as s:
            s.add(WorkerLease(
                name=self.lease_name, holder_id=holder_id,
                expires_at=expires, acquired_at=now,
            ))
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                logger.info(
                    "Lease insert lost to another worker",
                    extra={"holder_id": holder_id},
                )
                return False
        return True

    async def renew_lease(self, holder_id: str, ttl_seconds: float) -> None:
        """Heartbeat. Raises LeaseLostError if another worker took the lease over."""
        expires = _utc_now() + timedelta(seconds=ttl_seconds)
        async with self._db.transaction() as s:
            result = await s.execute(
                update(WorkerLease)
                .where(
                    WorkerLease.name == self.lease_name,
                    WorkerLease.holder_id == holder_id,
                )
                .values(expires_at=expires),
            )
            if result.rowcount != 1:
                raise LeaseLostError(holder_id)

    async def release_lease(self, holder_id: str) -> None:
        async with self._db.transaction() as s:
            await s.execute(
                update(WorkerLease)
                .where(
                    WorkerLease.name == self.lease_name,
                    WorkerLease.holder_id == holder_id,
                )
                .values(expires_at=_utc_now()),
            )

    async def _assert_lease(self, s: AsyncSession, holder_id: str) -> None:
        held = await s.scalar(
            select(WorkerLease.name).where(
                WorkerLease.name == self.lease_name,
                WorkerLease.holder_id == holder_id,
                WorkerLease.expires_at > _utc_now(),
            ),
        )
        if held is None:
            raise LeaseLostError(holder_id)
