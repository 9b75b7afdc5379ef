import logging
from datetime import datetime

from app.core.config import get_settings
from app.core.crypto import CryptoCodec, DecryptionError, get_codec
from app.db.session import session_scope
from app.schemas.devices import BackfillResult, DeviceRecord
from app.services.device_store import DeviceStore, SqlDeviceStore, StorageError

logger = logging.getLogger(__name__)


def _resolve_chunk_size(chunk_size: int | None) -> int:
    if chunk_size and chunk_size > 0:
        return chunk_size
    return get_settings().backfill_chunk_size


def _backfill_row(
    store: DeviceStore,
    codec: CryptoCodec,
    row: DeviceRecord,
    result: BackfillResult,
    log: logging.Logger,
) -> None:
    if row.token_hash:
        result.skipped += 1
        return
    if not row.push_token:
        log.warning("Skipping device %s without a stored token.", row.id)
        result.skipped += 1
        return

    try:
        plain = codec.decrypt(row.stored_token())
        if not plain:
            log.warning("Skipping device %s: decryption returned an empty token.", row.id)
            result.skipped += 1
            return
        token_hash = codec.hash(plain)
        if result.dry_run:
            log.info("[dry-run] would set token hash for device %s.", row.id)
        else:
            store.update(row.id, {"token_hash": token_hash})
        result.updated += 1
    except (DecryptionError, StorageError) as exc:
        log.error("Failed to backfill device %s: %s", row.id, exc)
        result.failures += 1


def backfill_device_token_hashes(
    store: DeviceStore | None = None,
    *,
    chunk_size: int | None = None,
    dry_run: bool = False,
    codec: CryptoCodec | None = None,
    log: logging.Logger | None = None,
) -> BackfillResult:
    if store is None:
        with session_scope() as db:
            return backfill_device_token_hashes(
                SqlDeviceStore(db),
                chunk_size=chunk_size,
                dry_run=dry_run,
                codec=codec,
                log=log,
            )

    log = log or logger
    codec = codec or get_codec()
    page_size = _resolve_chunk_size(chunk_size)
    result = BackfillResult(dry_run=dry_run)
    last_created_at: datetime | None = None

    while True:
        try:
            rows = store.fetch_unhashed_page(last_created_at, page_size)
        except StorageError as exc:
            log.error("Could not read devices for backfill: %s", exc)
            result.failures += 1
            break

        if not rows:
            break

        for row in rows:
            result.processed += 1
            _backfill_row(store, codec, row, result, log)

        last_created_at = rows[-1].created_at or last_created_at
        if last_created_at is None or len(rows) < page_size:
            break

    log.info(
        "Backfill finished: processed=%d, updated=%d, skipped=%d, failures=%d, dry_run=%s",
        result.processed,
        result.updated,
        result.skipped,
        result.failures,
        dry_run,
    )
    return result
