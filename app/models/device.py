from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.common import CreatedAtMixin, UUIDPrimaryKeyMixin


class Device(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    __tablename__ = "devices"
    __table_args__ = (Index("ix_devices_token_hash_id", "token_hash", "id"),)

    class_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    # ciphertext, or plaintext / "enc.v1:" string for rows written before hashing
    push_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    push_token_iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    push_token_tag: Mapped[str | None] = mapped_column(String(32), nullable=True)
    token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
