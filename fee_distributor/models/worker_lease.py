"""WorkerLease ORM — durable, expiring single-flight claim shared by all instances.

Invariants:
    - At most one row per lease name
    - A lease is held by holder_id while expires_at is in the future
    - Ownership changes only through a compare-and-swap UPDATE (CursorStore)
"""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base


class WorkerLease(Base):
    __tablename__ = "worker_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
