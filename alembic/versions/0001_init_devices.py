"""init devices

Revision ID: 0001_init_devices
Revises:
Create Date: 2026-02-07
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_init_devices"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("class_id", sa.String(length=36), nullable=False),
        sa.Column("push_token", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_devices_class_id", "devices", ["class_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_devices_class_id", table_name="devices")
    op.drop_table("devices")
