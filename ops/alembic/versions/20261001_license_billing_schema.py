"""Create licenses, notification jobs and notification log tables

Revision ID: 20261001_license_billing_schema
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261001_license_billing_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "licenses",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("license_key", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(64)),
        sa.Column("ruc_or_dni", sa.String(32)),
        sa.Column("company_name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(32)),
        sa.Column("email", sa.String(255)),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("frequency", sa.String(16), nullable=False),
        sa.Column("domain", sa.String(255)),
        sa.Column("service_type", sa.String(64)),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True)),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("next_payment_due", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text()),
        sa.Column("late_fee_amount", sa.Numeric(12, 2)),
        sa.Column("late_fee_percentage", sa.Numeric(7, 4)),
        sa.Column("outstanding_balance", sa.Numeric(12, 2)),
        sa.Column("prorated_amount_due", sa.Numeric(12, 2)),
        sa.Column("prorated_days", sa.Integer()),
        sa.Column("billing_cycle_days", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("license_key", name="uq_licenses_license_key"),
    )
    op.create_index("ix_licenses_ruc_or_dni", "licenses", ["ruc_or_dni"])
    op.create_index("ix_licenses_domain", "licenses", ["domain"])
    op.create_index("ix_licenses_status", "licenses", ["status"])

    op.create_table(
        "license_notification_jobs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("ruc_or_dni", sa.String(32), nullable=False),
        sa.Column("company_name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(32)),
        sa.Column("email", sa.String(255)),
        sa.Column("license_ids", sa.JSON(), nullable=False),
        sa.Column("licenses", sa.JSON(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("severity_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_base", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_late", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_due", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("channel", sa.String(32)),
        sa.Column("origin", sa.String(64)),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ux_license_notification_jobs_hash",
        "license_notification_jobs",
        ["hash"],
        unique=True,
    )
    op.create_index(
        "ix_license_notification_jobs_status", "license_notification_jobs", ["status"]
    )

    op.create_table(
        "license_notification_logs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("job_id", sa.String(32)),
        sa.Column("ruc_or_dni", sa.String(32), nullable=False),
        sa.Column("license_ids", sa.JSON(), nullable=False),
        sa.Column("severity", sa.String(32), nullable=False),
        sa.Column("total_due", sa.Numeric(12, 2), nullable=False),
        sa.Column("message_length", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("conversation_id", sa.String(64)),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_license_notification_logs_ruc_or_dni", "license_notification_logs", ["ruc_or_dni"]
    )


def downgrade() -> None:
    op.drop_index(
        "ix_license_notification_logs_ruc_or_dni", table_name="license_notification_logs"
    )
    op.drop_table("license_notification_logs")
    op.drop_index("ix_license_notification_jobs_status", table_name="license_notification_jobs")
    op.drop_index("ux_license_notification_jobs_hash", table_name="license_notification_jobs")
    op.drop_table("license_notification_jobs")
    op.drop_index("ix_licenses_status", table_name="licenses")
    op.drop_index("ix_licenses_domain", table_name="licenses")
    op.drop_index("ix_licenses_ruc_or_dni", table_name="licenses")
    op.drop_table("licenses")
