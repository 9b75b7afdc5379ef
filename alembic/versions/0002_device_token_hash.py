"""encrypt device tokens and add token hash

Rows that exist before this revision keep their token in push_token and get
a NULL token_hash; scripts/backfill_device_token_hash.py fills it in.

Revision ID: 0002_device_token_hash
Revises: 0001_init_devices
Create Date: 2026-03-02
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0002_device_token_hash"
down_revision: str | None = "0001_init_devices"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("devices", sa.Column("user_id", sa.String(length=36), nullable=True))
    op.add_column("devices", sa.Column("push_token_iv", sa.String(length=32), nullable=True))
    op.add_column("devices", sa.Column("push_token_tag", sa.String(length=32), nullable=True))
    op.add_column("devices", sa.Column("token_hash", sa.String(length=64), nullable=True))
    op.add_column("devices", sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_devices_user_id", "devices", ["user_id"], unique=False)
    op.create_index("ix_devices_created_at", "devices", ["created_at"], unique=False)
    # keyset order used by the dedupe job; not unique until duplicates are merged
    op.create_index("ix_devices_token_hash_id", "devices", ["token_hash", "id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_devices_token_hash_id", table_name="devices")
    op.drop_index("ix_devices_created_at", table_name="devices")
    op.drop_index("ix_devices_user_id", table_name="devices")
    op.drop_column("devices", "last_seen_at")
    op.drop_column("devices", "token_hash")
    op.drop_column("devices", "push_token_tag")
    op.drop_column("devices", "push_token_iv")
    op.drop_column("devices", "user_id")
