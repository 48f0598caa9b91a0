"""Initial schema — ledger inputs, cursor, distributions, balances, outbox, lease.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(38, 18)


def upgrade() -> None:
    op.create_table(
        "ledger_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("asset_ref", sa.String(128), nullable=False),
        sa.Column("quantity", AMOUNT, nullable=False),
    )
    op.create_index("ix_ledger_events_asset_ref", "ledger_events", ["asset_ref"])

    op.create_table(
        "assets",
        sa.Column("asset_ref", sa.String(128), primary_key=True),
        sa.Column("recipient_address", sa.String(128), nullable=False),
    )
    op.create_index("ix_assets_recipient_address", "assets", ["recipient_address"])

    op.create_table(
        "cursors",
        sa.Column("seq", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("value", sa.BigInteger, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_cursors_recorded_at", "cursors", ["recorded_at"])

    op.create_table(
        "batch_markers",
        sa.Column("idempotency_key", sa.String(64), primary_key=True),
        sa.Column("source_cursor", sa.BigInteger, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transfer_ref", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("handle_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_batch_markers_source_cursor", "batch_markers", ["source_cursor"])
    op.create_index("ix_batch_markers_status", "batch_markers", ["status"])

    op.create_table(
        "fee_distributions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient_address", sa.String(128), nullable=False),
        sa.Column("transfer_ref", sa.String(128), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column(
            "batch_key", sa.String(64),
            sa.ForeignKey("batch_markers.idempotency_key"), nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "transfer_ref", "recipient_address",
            name="uq_fee_distributions_transfer_recipient",
        ),
    )
    op.create_index("ix_fee_distributions_recipient_address", "fee_distributions", ["recipient_address"])
    op.create_index("ix_fee_distributions_batch_key", "fee_distributions", ["batch_key"])

    op.create_table(
        "account_balances",
        sa.Column("recipient_address", sa.String(128), primary_key=True),
        sa.Column("total_claimed", AMOUNT, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "carried_balances",
        sa.Column("recipient_address", sa.String(128), primary_key=True),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("through_event_id", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "worker_leases",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("holder_id", sa.String(128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("worker_leases")
    op.drop_table("carried_balances")
    op.drop_table("account_balances")
    op.drop_table("fee_distributions")
    op.drop_table("batch_markers")
    op.drop_table("cursors")
    op.drop_table("assets")
    op.drop_table("ledger_events")
