"""CarriedBalance ORM — evaluated value deliberately left unpaid until a later pass.

Invariants:
    - One row per recipient; absent row means nothing carried
    - Rewritten only in the cursor commit transaction
    - through_event_id is the cursor value the amount is accounted up to
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base
from fee_distributor.db.types import Amount


class CarriedBalance(Base):
    __tablename__ = "carried_balances"

    recipient_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    through_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
