"""BatchMarker ORM — durable outbox row for one batch of transfers.

Invariants:
    - idempotency_key is the primary key: one marker per distinct batch
    - handle_expires_at is stored before each submission: once it has passed, a
      transfer for this batch that is absent from network history never will post
    - transfer_ref is set before the confirmation wait begins (status SUBMITTED)
    - status RECORDED implies the batch's DistributionRecords and balance
      increments were committed in the same transaction
    - status COMMITTED implies the cursor has moved past the batch's window

Design Decisions:
    - payload stores recipients and amounts as JSON strings so a CONFIRMED
      marker can be replayed into DistributionRecords without re-aggregating
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.core.domain_types import BatchStatus
from fee_distributor.db.base import Base


class BatchMarker(Base):
    __tablename__ = "batch_markers"

    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_cursor: Mapped[int] = mapped_column(
        BigInteger, nullable=False, index=True,
    )
    payload: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.PENDING.value, index=True,
    )
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    handle_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
