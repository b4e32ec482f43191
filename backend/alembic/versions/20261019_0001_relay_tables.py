"""Create customer identity, message ledger and dedup marker tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customer_identities",
        sa.Column("customer_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("native_address", sa.String(length=256), nullable=False),
        sa.Column("thread_ref", sa.String(length=128), nullable=True),
        sa.Column("banned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("banned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("customer_id"),
        sa.UniqueConstraint("channel", "native_address", name="uq_customer_identities_channel_address"),
    )
    op.create_index("ix_customer_identities_thread_ref", "customer_identities", ["thread_ref"], unique=False)

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("origin_native_id", sa.String(length=256), nullable=False),
        sa.Column("destination_native_id", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer_identities.customer_id"]),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("customer_id", "direction", "origin_native_id", name="uq_ledger_entries_origin"),
    )
    op.create_index("ix_ledger_entries_customer_id", "ledger_entries", ["customer_id"], unique=False)
    op.create_index(
        "ix_ledger_entries_destination_native_id",
        "ledger_entries",
        ["destination_native_id"],
        unique=False,
    )

    op.create_table(
        "channel_message_records",
        sa.Column("record_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("native_message_id", sa.String(length=256), nullable=False),
        sa.ForeignKeyConstraint(["entry_id"], ["ledger_entries.entry_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint("entry_id"),
    )
    op.create_index(
        "ix_channel_message_records_native_message_id",
        "channel_message_records",
        ["native_message_id"],
        unique=False,
    )

    op.create_table(
        "dedup_markers",
        sa.Column("marker_key", sa.String(length=320), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("marker_key"),
    )
    op.create_index("ix_dedup_markers_expires_at", "dedup_markers", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_dedup_markers_expires_at", table_name="dedup_markers")
    op.drop_table("dedup_markers")
    op.drop_index("ix_channel_message_records_native_message_id", table_name="channel_message_records")
    op.drop_table("channel_message_records")
    op.drop_index("ix_ledger_entries_destination_native_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_customer_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_customer_identities_thread_ref", table_name="customer_identities")
    op.drop_table("customer_identities")
