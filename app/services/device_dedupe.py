import logging
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime
from itertools import groupby
from typing import Any, NamedTuple

from app.core.config import get_settings
from app.core.metrics import increment_devices_deduplicated
from app.db.session import session_scope
from app.schemas.devices import DedupeCursor, DedupeResult, DeviceRecord
from app.services.device_store import DeviceStore, SqlDeviceStore, StorageError

logger = logging.getLogger(__name__)

_NO_ACTIVITY = datetime.min.replace(tzinfo=UTC)


class GroupOutcome(NamedTuple):
    deleted: int = 0
    merged: int = 0
    failures: int = 0


def _activity(row: DeviceRecord) -> datetime:
    return row.activity_at or _NO_ACTIVITY


def _by_id(rows: Sequence[DeviceRecord]) -> list[DeviceRecord]:
    return sorted(rows, key=lambda row: row.id)


def pick_canonical(rows: Sequence[DeviceRecord]) -> DeviceRecord:
    # max keeps the first maximum, so ties go to the lowest id
    return max(_by_id(rows), key=lambda row: (bool(row.user_id), _activity(row)))


def pick_latest(rows: Sequence[DeviceRecord]) -> DeviceRecord:
    return max(_by_id(rows), key=_activity)


def merge_values(
    canonical: DeviceRecord,
    latest: DeviceRecord,
    owners: Sequence[str],
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "class_id": latest.class_id,
        "push_token": latest.push_token,
        "push_token_iv": latest.push_token_iv,
        "push_token_tag": latest.push_token_tag,
        "last_seen_at": latest.last_seen_at
        or latest.created_at
        or canonical.last_seen_at
        or canonical.created_at,
    }
    if not canonical.user_id and owners:
        values["user_id"] = owners[0]
    return values


def duplicate_groups(rows: Sequence[DeviceRecord]) -> Iterator[list[DeviceRecord]]:
    for token_hash, items in groupby(rows, key=lambda row: row.token_hash):
        group = list(items)
        if token_hash and len(group) > 1:
            yield group


def _resolve_page_size(page_size: int | None) -> int:
    if page_size and page_size > 0:
        return page_size
    return get_settings().dedup_page_size


class DedupeEngine:
    def __init__(
        self,
        store: DeviceStore,
        *,
        apply: bool,
        page_size: int,
        log: logging.Logger,
        count_deduplicated: Callable[[int], None],
    ) -> None:
        self.store = store
        self.apply = apply
        self.page_size = page_size
        self.log = log
        self.count_deduplicated = count_deduplicated
        self.result = DedupeResult(dry_run=not apply)
        # rows of the group still open at the end of the last full page
        self._carry: list[DeviceRecord] = []
        self._cursor: DedupeCursor | None = None

    def run(self) -> DedupeResult:
        while True:
            try:
                rows = self.store.fetch_hashed_page(self._cursor, self.page_size)
            except StorageError as exc:
                # without a trusted cursor the run cannot resume; carried rows are dropped
                self.log.error("Could not read devices for dedupe: %s", exc)
                self.result.failures += 1
                return self._finish()

            if not rows:
                break

            self.result.batches += 1
            last = rows[-1]
            self._cursor = DedupeCursor(token_hash=last.token_hash, id=last.id)
            page_full = len(rows) >= self.page_size
            self._process_batch(self._close_groups(rows, page_full))
            if not page_full:
                break

        if self._carry:
            remaining, self._carry = self._carry, []
            self._process_batch(remaining, final=True)
        return self._finish()

    def _close_groups(self, rows: list[DeviceRecord], page_full: bool) -> list[DeviceRecord]:
        combined = self._carry + rows
        if not page_full:
            self._carry = []
            return combined

        tail_hash = combined[-1].token_hash
        split = len(combined)
        while split > 0 and combined[split - 1].token_hash == tail_hash:
            split -= 1
        self._carry = combined[split:]
        return combined[:split]

    def _process_batch(self, rows: list[DeviceRecord], final: bool = False) -> None:
        groups_seen = deleted = merged = 0
        for group in duplicate_groups(rows):
            outcome = self._process_group(group)
            groups_seen += 1
            deleted += outcome.deleted
            merged += outcome.merged
            self.result.groups += 1
            self.result.deleted += outcome.deleted
            self.result.merged += outcome.merged
            self.result.failures += outcome.failures

        if final:
            if groups_seen == 0:
                return
            self.result.batches += 1

        self.log.info(
            "Batch %d: groups_seen=%d, deleted=%d, merged=%d, total_groups=%d, total_deleted=%d",
            self.result.batches,
            groups_seen,
            deleted,
            merged,
            self.result.groups,
            self.result.deleted,
        )

    def _process_group(self, rows: list[DeviceRecord]) -> GroupOutcome:
        canonical = pick_canonical(rows)
        latest = pick_latest(rows)
        duplicate_ids = [row.id for row in rows if row.id != canonical.id]
        owners = list(dict.fromkeys(row.user_id for row in rows if row.user_id))
        if len(owners) > 1:
            self.log.warning(
                "Duplicate group %s has several user ids: %s; keeping device %s",
                canonical.token_hash,
                ", ".join(owners),
                canonical.id,
            )
        values = merge_values(canonical, latest, owners)

        if not self.apply:
            self.log.info(
                "[dry-run] would update canonical device %s and delete %s",
                canonical.id,
                ", ".join(duplicate_ids),
            )
            return GroupOutcome(deleted=len(duplicate_ids), merged=1)

        try:
            self.store.update(canonical.id, values)
        except StorageError as exc:
            self.log.error("Failed to update canonical device %s: %s", canonical.id, exc)
            return GroupOutcome(failures=1)

        try:
            self.store.delete_ids(duplicate_ids)
        except StorageError as exc:
            self.log.error("Failed to delete duplicates (%s): %s", ", ".join(duplicate_ids), exc)
            return GroupOutcome(merged=1, failures=1)

        self.count_deduplicated(len(duplicate_ids))
        return GroupOutcome(deleted=len(duplicate_ids), merged=1)

    def _finish(self) -> DedupeResult:
        result = self.result
        self.log.info(
            "Dedupe finished: groups=%d, merged=%d, deleted=%d, failures=%d, dry_run=%s, batches=%d",
            result.groups,
            result.merged,
            result.deleted,
            result.failures,
            result.dry_run,
            result.batches,
        )
        return result


def dedupe_devices(
    store: DeviceStore | None = None,
    *,
    apply: bool = False,
    page_size: int | None = None,
    log: logging.Logger | None = None,
    count_deduplicated: Callable[[int], None] | None = None,
) -> DedupeResult:
    if store is None:
        with session_scope() as db:
            return dedupe_devices(
                SqlDeviceStore(db),
                apply=apply,
                page_size=page_size,
                log=log,
                count_deduplicated=count_deduplicated,
            )

    engine = DedupeEngine(
        store,
        apply=apply,
        page_size=_resolve_page_size(page_size),
        log=log or logger,
        count_deduplicated=count_deduplicated or increment_devices_deduplicated,
    )
    return engine.run()
