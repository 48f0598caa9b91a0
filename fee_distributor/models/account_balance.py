"""AccountBalance ORM — lifetime amount paid to each recipient.

Invariants:
    - recipient_address is unique
    - total_claimed never decreases; it grows only together with a
      DistributionRecord insert, in the same transaction
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base
from fee_distributor.db.types import Amount


class AccountBalance(Base):
    __tablename__ = "account_balances"

    recipient_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_claimed: Mapped[Decimal] = mapped_column(
        Amount, nullable=False, default=Decimal("0"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
