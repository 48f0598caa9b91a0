"""LedgerEvent ORM — immutable source records whose value is paid out.

Invariants:
    - id is unique and monotonically increasing (assigned upstream)
    - Rows are never updated or deleted by this worker
"""

from decimal import Decimal

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base
from fee_distributor.db.types import Amount


class LedgerEvent(Base):
    """One fee-bearing event attributed to an asset."""
    __tablename__ = "ledger_events"

    id: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=False,
    )
    asset_ref: Mapped[str] = mapped_column(
        String(128), nullable=False, index=True,
    )
    quantity: Mapped[Decimal] = mapped_column(Amount, nullable=False)
