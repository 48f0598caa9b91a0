"""Cursor ORM — append-only processing watermark.

Invariants:
    - Rows are only ever inserted
    - Latest row by (recorded_at, seq) is authoritative
    - value never decreases from one row to the next (enforced by CursorStore.append)
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base


class Cursor(Base):
    __tablename__ = "cursors"

    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True, autoincrement=True,
    )
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
