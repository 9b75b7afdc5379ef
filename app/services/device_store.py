from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.device import Device
from app.schemas.devices import DedupeCursor, DeviceRecord


class StorageError(Exception):
    pass


class DeviceStore(Protocol):
    def fetch_hashed_page(self, after: DedupeCursor | None, limit: int) -> list[DeviceRecord]: ...

    def fetch_unhashed_page(self, created_after: datetime | None, limit: int) -> list[DeviceRecord]: ...

    def find_by_hash(self, token_hash: str) -> DeviceRecord | None: ...

    def insert(self, record: DeviceRecord) -> DeviceRecord: ...

    def update(self, device_id: str, values: dict[str, Any]) -> None: ...

    def delete_ids(self, ids: Sequence[str]) -> int: ...

    def list_by_class(self, class_id: str) -> list[DeviceRecord]: ...

    def list_by_user(self, user_id: str) -> list[DeviceRecord]: ...

    def delete_by_user(self, user_id: str) -> int: ...


class SqlDeviceStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"Failed to {action}: {exc}") from exc

    def _records(self, rows: Sequence[Device]) -> list[DeviceRecord]:
        return [DeviceRecord.model_validate(row) for row in rows]

    def fetch_hashed_page(self, after: DedupeCursor | None, limit: int) -> list[DeviceRecord]:
        query = select(Device).where(Device.token_hash.is_not(None))
        if after is not None:
            query = query.where(
                or_(
                    Device.token_hash > after.token_hash,
                    and_(Device.token_hash == after.token_hash, Device.id > after.id),
                )
            )
        query = query.order_by(Device.token_hash.asc(), Device.id.asc()).limit(limit)
        with self._guard("read devices page"):
            return self._records(self.db.scalars(query).all())

    def fetch_unhashed_page(self, created_after: datetime | None, limit: int) -> list[DeviceRecord]:
        query = select(Device).where(Device.token_hash.is_(None))
        if created_after is not None:
            query = query.where(Device.created_at > created_after)
        query = query.order_by(Device.created_at.asc(), Device.id.asc()).limit(limit)
        with self._guard("read unhashed devices"):
            return self._records(self.db.scalars(query).all())

    def find_by_hash(self, token_hash: str) -> DeviceRecord | None:
        query = select(Device).where(Device.token_hash == token_hash).order_by(Device.id.asc()).limit(1)
        with self._guard("look up device"):
            row = self.db.scalar(query)
        return DeviceRecord.model_validate(row) if row else None

    def insert(self, record: DeviceRecord) -> DeviceRecord:
        device = Device(**record.model_dump(exclude_none=True))
        with self._guard("insert device"):
            self.db.add(device)
            self.db.commit()
            self.db.refresh(device)
        return DeviceRecord.model_validate(device)

    def update(self, device_id: str, values: dict[str, Any]) -> None:
        statement = (
            update(Device)
            .where(Device.id == device_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._guard(f"update device {device_id}"):
            result = self.db.execute(statement)
            self.db.commit()
        if result.rowcount == 0:
            raise StorageError(f"Device {device_id} no longer exists")

    def delete_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        statement = delete(Device).where(Device.id.in_(list(ids))).execution_options(synchronize_session=False)
        with self._guard("delete devices"):
            result = self.db.execute(statement)
            self.db.commit()
        return result.rowcount

    def list_by_class(self, class_id: str) -> list[DeviceRecord]:
        query = select(Device).where(Device.class_id == class_id).order_by(Device.created_at.asc())
        with self._guard("list class devices"):
            return self._records(self.db.scalars(query).all())

    def list_by_user(self, user_id: str) -> list[DeviceRecord]:
        query = select(Device).where(Device.user_id == user_id).order_by(Device.created_at.asc())
        with self._guard("list user devices"):
            return self._records(self.db.scalars(query).all())

    def delete_by_user(self, user_id: str) -> int:
        statement = delete(Device).where(Device.user_id == user_id).execution_options(synchronize_session=False)
        with self._guard("delete user devices"):
            result = self.db.execute(statement)
            self.db.commit()
        return result.rowcount
