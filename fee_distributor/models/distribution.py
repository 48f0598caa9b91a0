"""DistributionRecord ORM — one row per recipient per confirmed batch.

Invariants:
    - Append-only
    - (transfer_ref, recipient_address) is unique: replaying a confirmed batch
      can never record the same payout twice
    - amount is the aggregated (pre fee-adjustment) amount
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from fee_distributor.db.base import Base
from fee_distributor.db.types import Amount


class DistributionRecord(Base):
    __tablename__ = "fee_distributions"
    __table_args__ = (
        UniqueConstraint(
            "transfer_ref", "recipient_address",
            name="uq_fee_distributions_transfer_recipient",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    recipient_address: Mapped[str] = mapped_column(
        String(128), nullable=False, index=True,
    )
    transfer_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    batch_key: Mapped[str] = mapped_column(
        String(64), ForeignKey("batch_markers.idempotency_key"),
        nullable=False, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
