"""Loyalty core tables: customers, ledger, conversion and segmentation.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_ENUMS = {
    "customer_device_type": ("IOS", "ANDROID", "WEB", "OTHER"),
    "ledger_entry_kind": ("EARN", "REDEEM", "EXPIRE", "ADJUST", "TRANSFER"),
    "ledger_entry_status": ("PENDING", "COMPLETED", "FAILED", "CANCELLED"),
    "ledger_entry_source": (
        "PURCHASE",
        "REFERRAL",
        "MANUAL_ADJUSTMENT",
        "CONVERSION",
        "AUTO_EXPIRE",
        "OTHER",
    ),
    "conversion_status": ("PENDING", "COMPLETED", "FAILED", "CANCELLED"),
    "customer_segment_type": ("TRANSACTION", "ENGAGEMENT", "APP_TYPE", "DEVICE", "CUSTOM"),
    "customer_segment_status": ("DRAFT", "ACTIVE", "INACTIVE"),
    "segment_refresh_frequency": ("HOURLY", "DAILY", "WEEKLY"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*_ENUMS[name], name=name)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_ref", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("tier", sa.String(), nullable=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coins_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("app_types", sa.JSON(), nullable=False),
        sa.Column("device_type", _enum("customer_device_type"), nullable=True),
        sa.Column("device_model", sa.String(), nullable=True),
        sa.Column("os_version", sa.String(), nullable=True),
        sa.Column("app_opens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_open_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("email_click_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("push_open_rate", sa.Numeric(5, 2), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_customers_external_ref", "customers", ["external_ref"], unique=True)

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", _enum("ledger_entry_kind"), nullable=False),
        sa.Column("status", _enum("ledger_entry_status"), nullable=False, server_default="PENDING"),
        sa.Column("source", _enum("ledger_entry_source"), nullable=False, server_default="OTHER"),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("spend_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=False, unique=True),
        sa.Column("related_entry_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["related_entry_id"], ["ledger_entries.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_ledger_entries_customer_id", "ledger_entries", ["customer_id"])
    op.create_index("ix_ledger_entries_related_entry_id", "ledger_entries", ["related_entry_id"])
    op.create_index("ix_ledger_entries_customer_occurred", "ledger_entries", ["customer_id", "occurred_at"])
    op.create_index("ix_ledger_entries_status_kind", "ledger_entries", ["status", "kind"])

    op.create_table(
        "conversion_rules",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("min_points_required", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_points_per_conversion", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "conversion_history",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rule_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("ledger_entry_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("base_coins", sa.Integer(), nullable=False),
        sa.Column("bonus_coins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=False, unique=True),
        sa.Column("status", _enum("conversion_status"), nullable=False, server_default="COMPLETED"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rule_id"], ["conversion_rules.id"]),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["ledger_entries.id"]),
    )
    op.create_index("ix_conversion_history_customer_id", "conversion_history", ["customer_id"])

    op.create_table(
        "customer_segments",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("segment_type", _enum("customer_segment_type"), nullable=False),
        sa.Column("criteria", sa.JSON(), nullable=False),
        sa.Column("status", _enum("customer_segment_status"), nullable=False, server_default="DRAFT"),
        sa.Column("customer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_refreshed", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_refresh_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "auto_refresh_frequency",
            _enum("segment_refresh_frequency"),
            nullable=False,
            server_default="DAILY",
        ),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_customer_segments_segment_type", "customer_segments", ["segment_type"])
    op.create_index("ix_customer_segments_status", "customer_segments", ["status"])

    op.create_table(
        "segment_memberships",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("segment_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["segment_id"], ["customer_segments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("segment_id", "customer_id", name="uq_segment_memberships_segment_customer"),
    )
    op.create_index("ix_segment_memberships_segment_id", "segment_memberships", ["segment_id"])
    op.create_index("ix_segment_memberships_customer_id", "segment_memberships", ["customer_id"])


def downgrade() -> None:
    op.drop_table("segment_memberships")
    op.drop_table("customer_segments")
    op.drop_table("conversion_history")
    op.drop_table("conversion_rules")
    op.drop_table("ledger_entries")
    op.drop_table("customers")
    bind = op.get_bind()
    for name in reversed(list(_ENUMS)):
        sa.Enum(name=name).drop(bind, checkfirst=True)
