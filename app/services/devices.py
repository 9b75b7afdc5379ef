import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from app.core.crypto import CryptoCodec, DecryptionError, get_codec
from app.core.metrics import increment_devices_registered
from app.models.common import utcnow
from app.schemas.devices import DeviceExport, DeviceRecord
from app.services.device_store import DeviceStore

logger = logging.getLogger(__name__)


class DeviceRegistry:
    def __init__(
        self,
        store: DeviceStore,
        codec: CryptoCodec | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec or get_codec()
        self.clock = clock

    def register(self, class_id: str, token: str, user_id: str | None = None) -> DeviceRecord:
        payload = self.codec.encrypt(token)
        token_hash = self.codec.hash(token)
        now = self.clock()

        existing = self.store.find_by_hash(token_hash)
        if existing:
            values = {
                "class_id": class_id,
                "push_token": payload.ct,
                "push_token_iv": payload.iv,
                "push_token_tag": payload.tag,
                "last_seen_at": now,
            }
            # an owner, once set, is never replaced by a later registration
            if user_id and not existing.user_id:
                values["user_id"] = user_id
            self.store.update(existing.id, values)
            record = existing.model_copy(update=values)
            logger.info("Device %s re-registered for class %s.", existing.id, class_id)
        else:
            record = self.store.insert(
                DeviceRecord(
                    id=str(uuid4()),
                    class_id=class_id,
                    user_id=user_id,
                    push_token=payload.ct,
                    push_token_iv=payload.iv,
                    push_token_tag=payload.tag,
                    token_hash=token_hash,
                    created_at=now,
                    last_seen_at=now,
                )
            )
            logger.info("Device %s registered for class %s.", record.id, class_id)

        increment_devices_registered()
        return record

    def _decrypt(self, record: DeviceRecord) -> str:
        try:
            return self.codec.decrypt(record.stored_token())
        except DecryptionError as exc:
            logger.warning("Dropping undecryptable token for device %s: %s", record.id, exc)
            return ""

    def get_class_tokens(self, class_id: str) -> list[str]:
        tokens = (self._decrypt(record) for record in self.store.list_by_class(class_id))
        return list(dict.fromkeys(token for token in tokens if token))

    def list_for_user(self, user_id: str) -> list[DeviceExport]:
        return [
            DeviceExport(
                id=record.id,
                class_id=record.class_id,
                token_masked=self.codec.mask(self._decrypt(record)),
                created_at=record.created_at,
                last_seen_at=record.last_seen_at,
            )
            for record in self.store.list_by_user(user_id)
        ]

    def delete_for_user(self, user_id: str) -> int:
        removed = self.store.delete_by_user(user_id)
        logger.info("Removed %d device(s) for user %s.", removed, user_id)
        return removed
