"""Persistent, self-numbering work queue under ``.notion-sync/queue``.

Record numbers encode priority. Webhook-triggered records take decreasing
numbers below ``PRIORITY_THRESHOLD`` and bulk discovery takes increasing
numbers from the threshold up, so ascending filename order yields real-time
work first and first-created-first-served within each class.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

from pydantic import ValidationError

from ntnsync.exceptions import StoreError
from ntnsync.schemas.notion import normalize_page_id
from ntnsync.schemas.queue import QueueEntry, QueuePage, QueueType
from ntnsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from ntnsync.filesystem.store import ReadableStore, Store, Transaction

logger = logging.getLogger(__name__)

QUEUE_DIR = ".notion-sync/queue"
MAX_ITEMS_PER_QUEUE = 10
PRIORITY_THRESHOLD = 1000


def queue_filename(number: int) -> str:
    return f"{number:08d}.json"


def _queue_number(filename: str) -> int | None:
    stem = filename.removesuffix(".json")
    return int(stem) if stem.isdigit() else None


class QueueManager:
    """Creates, reads and trims queue records.

    Reads go through the attached transaction when there is one, so records
    staged earlier in the same run are visible.
    """

    def __init__(self, store: Store, tx: Transaction | None = None) -> None:
        self.store = store
        self.tx = tx

    def set_transaction(self, tx: Transaction | None) -> None:
        self.tx = tx

    @property
    def _reader(self) -> ReadableStore:
        return self.tx if self.tx is not None else self.store

    def _require_tx(self) -> Transaction:
        if self.tx is None:
            msg = "queue modification requires an active transaction"
            raise StoreError(msg)
        return self.tx

    # ── Listing ──────────────────────────────────────

    def list(self) -> list[str]:
        """Return record filenames in processing order."""
        numbered: list[tuple[int, str]] = []
        for info in self._reader.list(QUEUE_DIR):
            if info.is_dir or not info.name.endswith(".json"):
                continue
            number = _queue_number(info.name)
            if number is not None:
                numbered.append((number, info.name))
        return [name for _, name in sorted(numbered)]

    def _numbers(self) -> list[int]:
        return [n for n in (_queue_number(name) for name in self.list()) if n is not None]

    def next_batch_number(self) -> int:
        batch = [n for n in self._numbers() if n >= PRIORITY_THRESHOLD]
        return max(batch) + 1 if batch else PRIORITY_THRESHOLD

    def next_priority_number(self) -> int:
        priority = [n for n in self._numbers() if n < PRIORITY_THRESHOLD]
        number = (min(priority) if priority else PRIORITY_THRESHOLD) - 1
        if number < 0:
            msg = "priority queue numbers exhausted"
            raise StoreError(msg)
        return number

    # ── Records ──────────────────────────────────────

    def read(self, filename: str) -> QueueEntry:
        """Load a record; raises FileNotFoundError or pydantic ValidationError."""
        return QueueEntry.from_json(self._reader.read(f"{QUEUE_DIR}/{filename}"))

    def create(self, entry: QueueEntry) -> str:
        """Write *entry* as one or more batch records of at most MAX_ITEMS_PER_QUEUE pages.

        Returns the first filename written, or "" when there is nothing to queue.
        """
        if not entry.pages:
            return ""
        tx = self._require_tx()
        created_at = entry.created_at or now_utc()
        number = self.next_batch_number()
        first = ""
        for start in range(0, len(entry.pages), MAX_ITEMS_PER_QUEUE):
            chunk = entry.model_copy(
                update={
                    "pages": entry.pages[start : start + MAX_ITEMS_PER_QUEUE],
                    "created_at": created_at,
                }
            )
            filename = queue_filename(number)
            tx.write(f"{QUEUE_DIR}/{filename}", chunk.to_json())
            logger.debug(
                "Created queue record %s (%s, %d page(s), folder %s)",
                filename,
                entry.type,
                len(chunk.pages),
                entry.folder,
            )
            first = first or filename
            number += 1
        return first

    def create_priority_entry(self, page_id: str, folder: str) -> str:
        """Queue a single page for immediate update ahead of all batch records."""
        tx = self._require_tx()
        filename = queue_filename(self.next_priority_number())
        entry = QueueEntry(
            type=QueueType.UPDATE,
            folder=folder,
            pages=[QueuePage(id=page_id)],
            created_at=now_utc(),
        )
        tx.write(f"{QUEUE_DIR}/{filename}", entry.to_json())
        logger.info("Created priority queue record %s for page %s", filename, page_id)
        return filename

    def update(self, filename: str, entry: QueueEntry) -> None:
        """Rewrite a record with its remaining pages; an empty record is deleted."""
        if not entry.pages:
            self.delete(filename)
            return
        logger.debug("Updating queue record %s (%d remaining)", filename, len(entry.pages))
        self._require_tx().write(f"{QUEUE_DIR}/{filename}", entry.to_json())

    def delete(self, filename: str) -> None:
        logger.debug("Deleting queue record %s", filename)
        self._require_tx().delete(f"{QUEUE_DIR}/{filename}")

    # ── Queries ──────────────────────────────────────

    def entries(self) -> list[tuple[str, QueueEntry]]:
        result: list[tuple[str, QueueEntry]] = []
        for filename in self.list():
            try:
                result.append((filename, self.read(filename)))
            except (FileNotFoundError, ValidationError) as exc:
                logger.warning("Skipping unreadable queue record %s: %s", filename, exc)
        return result

    def is_queued(self, page_id: str, queue_type: QueueType = QueueType.INIT) -> bool:
        """Return True if *page_id* already waits in an ``init`` record.

        Only init requests are deduplicated; repeated updates are allowed.
        """
        if queue_type != QueueType.INIT:
            return False
        norm = normalize_page_id(page_id)
        return any(
            entry.type == QueueType.INIT and norm in entry.page_ids
            for _, entry in self.entries()
        )

    def count_by_folder(self) -> dict[str, int]:
        """Return the number of queued pages per folder."""
        counts: Counter[str] = Counter()
        for _, entry in self.entries():
            counts[entry.folder] += len(entry.pages)
        return dict(counts)

    def count_by_type(self) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for _, entry in self.entries():
            counts[str(entry.type)] += len(entry.pages)
        return dict(counts)
