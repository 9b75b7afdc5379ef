import base64
from datetime import datetime
from pathlib import Path

import pytest

from app.schemas.devices import DedupeCursor, DeviceRecord
from app.services.device_store import StorageError

ENC_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
HASH_SECRET = "test-token-hash-secret"


@pytest.fixture(autouse=True)
def crypto_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PII_ENC_KEY", ENC_KEY)
    monkeypatch.setenv("TOKEN_HASH_SECRET", HASH_SECRET)

    from app.core.config import clear_settings_cache
    from app.core.crypto import clear_codec_cache

    clear_settings_cache()
    clear_codec_cache()
    yield
    clear_settings_cache()
    clear_codec_cache()


@pytest.fixture()
def codec():
    from app.core.crypto import CryptoCodec

    return CryptoCodec(ENC_KEY, HASH_SECRET)


@pytest.fixture()
def db_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_file = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_file.as_posix()}")

    from app.core.config import clear_settings_cache
    from app.db.base import Base
    from app.db.session import get_engine, get_session_factory, reset_engine
    from app.models import device as _device_model  # noqa: F401

    clear_settings_cache()
    reset_engine()
    Base.metadata.create_all(bind=get_engine())

    with get_session_factory()() as db:
        yield db

    Base.metadata.drop_all(bind=get_engine())
    reset_engine()


@pytest.fixture()
def sql_store(db_session):
    from app.services.device_store import SqlDeviceStore

    return SqlDeviceStore(db_session)


def make_row(
    device_id: str,
    token_hash: str | None,
    *,
    user_id: str | None = None,
    class_id: str | None = None,
    last_seen_at: str | None = None,
    created_at: str | None = "2024-12-01T00:00:00Z",
) -> DeviceRecord:
    return DeviceRecord(
        id=device_id,
        class_id=class_id or f"class-{device_id}",
        user_id=user_id,
        push_token=f"ct-{device_id}",
        push_token_iv=f"iv-{device_id}",
        push_token_tag=f"tag-{device_id}",
        token_hash=token_hash,
        created_at=created_at,
        last_seen_at=last_seen_at,
    )


class MemoryDeviceStore:
    """In-memory DeviceStore with switches for injecting storage failures."""

    def __init__(self, rows: list[DeviceRecord] | None = None) -> None:
        self.rows: dict[str, DeviceRecord] = {row.id: row.model_copy() for row in rows or []}
        self.fetches = 0
        self.fail_fetch_on: int | None = None
        self.fail_update_ids: set[str] = set()
        self.fail_delete = False
        self.updates: list[tuple[str, dict]] = []
        self.deleted_batches: list[list[str]] = []

    def fetch_hashed_page(self, after: DedupeCursor | None, limit: int) -> list[DeviceRecord]:
        self.fetches += 1
        if self.fail_fetch_on == self.fetches:
            raise StorageError("connection reset by peer")
        rows = sorted((row for row in self.rows.values() if row.token_hash), key=lambda row: (row.token_hash, row.id))
        if after is not None:
            rows = [row for row in rows if (row.token_hash, row.id) > (after.token_hash, after.id)]
        return [row.model_copy() for row in rows[:limit]]

    def fetch_unhashed_page(self, created_after: datetime | None, limit: int) -> list[DeviceRecord]:
        self.fetches += 1
        if self.fail_fetch_on == self.fetches:
            raise StorageError("connection reset by peer")
        rows = sorted((row for row in self.rows.values() if not row.token_hash), key=lambda row: (row.created_at, row.id))
        if created_after is not None:
            rows = [row for row in rows if row.created_at > created_after]
        return [row.model_copy() for row in rows[:limit]]

    def find_by_hash(self, token_hash: str) -> DeviceRecord | None:
        matches = sorted((row for row in self.rows.values() if row.token_hash == token_hash), key=lambda row: row.id)
        return matches[0].model_copy() if matches else None

    def insert(self, record: DeviceRecord) -> DeviceRecord:
        self.rows[record.id] = record.model_copy()
        return record

    def update(self, device_id: str, values: dict) -> None:
        if device_id in self.fail_update_ids or device_id not in self.rows:
            raise StorageError(f"update of {device_id} failed")
        self.rows[device_id] = self.rows[device_id].model_copy(update=values)
        self.updates.append((device_id, dict(values)))

    def delete_ids(self, ids) -> int:
        if self.fail_delete:
            raise StorageError("delete failed")
        self.deleted_batches.append(list(ids))
        removed = [device_id for device_id in ids if self.rows.pop(device_id, None) is not None]
        return len(removed)

    def list_by_class(self, class_id: str) -> list[DeviceRecord]:
        return [row.model_copy() for row in self.rows.values() if row.class_id == class_id]

    def list_by_user(self, user_id: str) -> list[DeviceRecord]:
        return [row.model_copy() for row in self.rows.values() if row.user_id == user_id]

    def delete_by_user(self, user_id: str) -> int:
        ids = [row.id for row in self.rows.values() if row.user_id == user_id]
        for device_id in ids:
            del self.rows[device_id]
        return len(ids)


@pytest.fixture()
def memory_store():
    return MemoryDeviceStore()
