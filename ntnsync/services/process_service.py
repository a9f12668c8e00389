"""Queue draining: materialize queued pages in priority order."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from ntnsync.exceptions import NtnsyncError, is_permanent_error
from ntnsync.schemas.queue import QueueEntry, QueuePage, QueueType
from ntnsync.services.datetime_service import format_duration

if TYPE_CHECKING:
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)

STATE_SAVE_INTERVAL = 10

QueueCallback = Callable[[], Awaitable[None]]


@dataclass
class ProcessOptions:
    """Limits for one queue pass; zero means unlimited."""

    folder: str = ""
    max_pages: int = 0
    max_files: int = 0
    max_queue_files: int = 0
    max_time: timedelta = timedelta(0)
    queue_delay: timedelta | None = None


@dataclass
class ProcessResult:
    pages_processed: int = 0
    pages_skipped: int = 0
    pages_dropped: int = 0
    files_written: int = 0
    queue_files_processed: int = 0
    stop_reason: str = ""
    duration: timedelta = timedelta(0)


def _after(queued: datetime | None, known: datetime | None) -> bool:
    if queued is None:
        return False
    if known is None:
        return True
    return queued > known


def should_skip(crawler: Crawler, page: QueuePage, queue_type: QueueType) -> bool:
    """Return True when the queued page is already synced at its queued version.

    ``init`` skips a page that has been written before unless the queue
    carries a newer edit time. ``update`` skips only when the queue carries
    an edit time that is not newer than the registry's.
    """
    registry = crawler.registry.find_page_by_id(page.id)
    if registry is None:
        return False
    if queue_type == QueueType.INIT:
        skip = registry.last_synced is not None and not _after(
            page.last_edited, registry.last_edited
        )
    else:
        skip = page.last_edited is not None and not _after(page.last_edited, registry.last_edited)
    if skip:
        logger.debug("Skipping unchanged page %s (%s)", page.id, registry.title)
    return skip


class _Limits:
    def __init__(self, options: ProcessOptions, result: ProcessResult) -> None:
        self.options = options
        self.result = result
        self.started = time.monotonic()

    def elapsed(self) -> timedelta:
        return timedelta(seconds=time.monotonic() - self.started)

    def reached(self) -> str:
        """Name of the page, file or time limit that has been reached, or ""."""
        options, result = self.options, self.result
        if options.max_pages > 0 and result.pages_processed >= options.max_pages:
            return "max_pages"
        if options.max_files > 0 and result.files_written >= options.max_files:
            return "max_files"
        if options.max_time > timedelta(0) and self.elapsed() >= options.max_time:
            return "max_time"
        return ""

    def queue_files_reached(self) -> bool:
        limit = self.options.max_queue_files
        return limit > 0 and self.result.queue_files_processed >= limit


async def _process_entry(
    crawler: Crawler,
    entry: QueueEntry,
    remaining: list[QueuePage],
    limits: _Limits,
) -> None:
    """Process the pages of one record, removing each finished page from *remaining*."""
    result = limits.result
    for page in list(entry.pages):
        if limits.reached():
            continue
        if should_skip(crawler, page, entry.type):
            result.pages_skipped += 1
            remaining.remove(page)
            continue
        try:
            written = await crawler.process_page(
                page.id, entry.folder, entry.type == QueueType.INIT, entry.parent_id
            )
        except (NtnsyncError, httpx.HTTPError, ValidationError) as exc:
            if is_permanent_error(exc):
                logger.warning("Dropping page %s after permanent error: %s", page.id, exc)
                result.pages_dropped += 1
                remaining.remove(page)
            else:
                logger.error("Failed to process page %s: %s", page.id, exc)
            continue

        remaining.remove(page)
        result.pages_processed += 1
        result.files_written += written
        if result.pages_processed % STATE_SAVE_INTERVAL == 0:
            crawler.save_state()


def _next_record(crawler: Crawler, skipped: set[str], folder: str) -> tuple[str, QueueEntry] | None:
    for filename in crawler.queue.list():
        if filename in skipped:
            continue
        try:
            entry = crawler.queue.read(filename)
        except (FileNotFoundError, ValidationError) as exc:
            logger.warning("Failed to read queue record %s: %s", filename, exc)
            skipped.add(filename)
            continue
        if folder and entry.folder != folder:
            logger.debug("Skipping queue record %s for folder %s", filename, entry.folder)
            skipped.add(filename)
            continue
        return filename, entry
    return None


async def process_queue(
    crawler: Crawler,
    options: ProcessOptions | None = None,
    callback: QueueCallback | None = None,
) -> ProcessResult:
    """Drain queue records in priority order until the queue is empty or a limit is hit.

    Each record is rewritten with the pages that are still pending (or
    deleted once empty) and the transaction is applied before *callback*
    runs. Permanent Notion errors drop the page; other errors keep it for
    the next run. Cancellation propagates after the current record has been
    rewritten.
    """
    options = options or ProcessOptions()
    delay = options.queue_delay
    if delay is None:
        delay = crawler.settings.queue_delay
    result = ProcessResult()
    limits = _Limits(options, result)
    skipped: set[str] = set()

    logger.info(
        "Processing queue (folder=%s, max_pages=%d, max_files=%d, max_queue_files=%d, max_time=%s)",
        options.folder or "*",
        options.max_pages,
        options.max_files,
        options.max_queue_files,
        format_duration(options.max_time),
    )
    crawler.ensure_transaction()
    crawler.load_state()

    while not limits.reached() and not limits.queue_files_reached():
        found = _next_record(crawler, skipped, options.folder)
        if found is None:
            logger.info("Queue is empty")
            break
        filename, entry = found

        if delay > timedelta(0):
            logger.info("Waiting %s before queue record %s", format_duration(delay), filename)
            await asyncio.sleep(delay.total_seconds())

        logger.info(
            "Processing queue record %s (%s, folder %s, %d page(s))",
            filename,
            entry.type,
            entry.folder,
            len(entry.pages),
        )
        crawler.state.add_folder(entry.folder)

        remaining = list(entry.pages)
        try:
            await _process_entry(crawler, entry, remaining, limits)
        finally:
            crawler.queue.update(filename, entry.model_copy(update={"pages": remaining}))
            if remaining:
                skipped.add(filename)
        result.queue_files_processed += 1
        crawler.apply()

        if callback is not None:
            await callback()

    crawler.save_state()
    crawler.apply()

    result.duration = limits.elapsed()
    result.stop_reason = limits.reached() or (
        "max_queue_files" if limits.queue_files_reached() else ""
    )
    logger.info(
        "Queue processing %s: processed=%d skipped=%d dropped=%d files=%d queue_files=%d in %s",
        f"stopped ({result.stop_reason})" if result.stop_reason else "complete",
        result.pages_processed,
        result.pages_skipped,
        result.pages_dropped,
        result.files_written,
        result.queue_files_processed,
        format_duration(result.duration),
    )
    return result
