"""Add payment intent code and verification state to licenses.

Revision ID: 20261015_license_payment_intent
Revises: 20261001_license_billing_schema
Create Date: 2026-10-15 10:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "20261015_license_payment_intent"
down_revision: str | None = "20261001_license_billing_schema"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TABLE = "licenses"


def upgrade() -> None:
    with op.batch_alter_table(TABLE) as batch:
        batch.add_column(sa.Column("current_payment_code", sa.String(16)))
        batch.add_column(sa.Column("current_payment_code_expires_at", sa.DateTime(timezone=True)))
        batch.add_column(
            sa.Column(
                "payment_verification_state",
                sa.String(16),
                nullable=False,
                server_default="idle",
            )
        )
        batch.create_index("ix_licenses_current_payment_code", ["current_payment_code"])


def downgrade() -> None:
    with op.batch_alter_table(TABLE) as batch:
        batch.drop_index("ix_licenses_current_payment_code")
        batch.drop_column("payment_verification_state")
        batch.drop_column("current_payment_code_expires_at")
        batch.drop_column("current_payment_code")
