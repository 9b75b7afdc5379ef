from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from app.models.common import ensure_utc


class EncryptedPayload(BaseModel):
    ct: str
    iv: str
    tag: str


class DeviceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    class_id: str
    user_id: str | None = None
    push_token: str | None = None
    push_token_iv: str | None = None
    push_token_tag: str | None = None
    token_hash: str | None = None
    created_at: datetime | None = None
    last_seen_at: datetime | None = None

    @field_validator("created_at", "last_seen_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def activity_at(self) -> datetime | None:
        return self.last_seen_at or self.created_at

    def stored_token(self) -> EncryptedPayload | str | None:
        """Token as stored: split payload when iv/tag are present, else the raw column."""
        if self.push_token and self.push_token_iv and self.push_token_tag:
            return EncryptedPayload(ct=self.push_token, iv=self.push_token_iv, tag=self.push_token_tag)
        return self.push_token


class DedupeCursor(BaseModel):
    token_hash: str
    id: str


class DeviceExport(BaseModel):
    id: str
    class_id: str
    token_masked: str | None
    created_at: datetime | None
    last_seen_at: datetime | None


class DedupeResult(BaseModel):
    groups: int = 0
    merged: int = 0
    deleted: int = 0
    failures: int = 0
    dry_run: bool = True
    batches: int = 0


class BackfillResult(BaseModel):
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failures: int = 0
    dry_run: bool = False
