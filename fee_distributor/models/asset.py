"""Asset ORM — maps a source asset to its payout recipient (read-only here)."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from fee_distributor.db.base import Base


class Asset(Base):
    __tablename__ = "assets"

    asset_ref: Mapped[str] = mapped_column(String(128), primary_key=True)
    recipient_address: Mapped[str] = mapped_column(
        String(128), nullable=False, index=True,
    )
