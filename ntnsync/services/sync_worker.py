"""Background queue processing with periodic commits and pushes.

The webhook server notifies the worker whenever it queues work. Rapid
notifications collapse into one pending signal, and the worker waits
``sync_delay`` before each pass so bursts of edits are synced together.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from ntnsync.exceptions import NtnsyncError
from ntnsync.services.datetime_service import format_duration, format_rfc3339, now_utc
from ntnsync.services.process_service import ProcessOptions, ProcessResult, process_queue

if TYPE_CHECKING:
    from ntnsync.config import Settings
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)

PUSH_ATTEMPTS = 4
PUSH_INITIAL_DELAY = 5.0


class CommitTracker:
    """Decides when a periodic commit is due."""

    def __init__(self, period: timedelta) -> None:
        self.period = period
        self.last_commit = time.monotonic()

    def should_commit(self) -> bool:
        if self.period <= timedelta(0):
            return False
        return time.monotonic() - self.last_commit >= self.period.total_seconds()

    def mark_committed(self) -> None:
        self.last_commit = time.monotonic()


def commit_message(reason: str) -> str:
    return f"[ntnsync] {reason} at {format_rfc3339(now_utc())}"


async def push_with_retry(
    crawler: Crawler, attempts: int = PUSH_ATTEMPTS, initial_delay: float = PUSH_INITIAL_DELAY
) -> None:
    """Push the store, retrying with doubling delays.

    Raises the last CalledProcessError once every attempt has failed.
    """
    delay = initial_delay
    for attempt in range(1, attempts + 1):
        try:
            await asyncio.to_thread(crawler.store.push)
        except subprocess.CalledProcessError as exc:
            logger.warning(
                "Push failed (attempt %d/%d): %s",
                attempt,
                attempts,
                (exc.stderr or "").strip() or exc,
            )
            if attempt == attempts:
                raise
            logger.info("Retrying push in %.0fs", delay)
            await asyncio.sleep(delay)
            delay *= 2
            continue
        if attempt > 1:
            logger.info("Push succeeded on attempt %d", attempt)
        return


async def commit_and_push(crawler: Crawler, settings: Settings, reason: str) -> str | None:
    """Commit staged work and push when enabled.

    Commit failures are logged and swallowed; a push that keeps failing
    raises.
    """
    commit_hash = crawler.checkpoint(commit_message(reason))
    if settings.push_enabled() and crawler.store.remote_enabled():
        await push_with_retry(crawler)
    return commit_hash


async def run_sync(
    crawler: Crawler, settings: Settings, options: ProcessOptions | None = None
) -> ProcessResult:
    """Process the queue with periodic commits, then make a final commit."""
    period = settings.effective_commit_period()
    tracker = CommitTracker(period)

    async def periodic_commit() -> None:
        if tracker.should_commit():
            await commit_and_push(crawler, settings, "periodic sync")
            tracker.mark_committed()

    if period > timedelta(0):
        logger.info("Periodic commits every %s", format_duration(period))
    callback = periodic_commit if period > timedelta(0) else None
    result = await process_queue(crawler, options, callback)
    if settings.commit_enabled():
        await commit_and_push(crawler, settings, "sync complete")
    return result


class SyncWorker:
    def __init__(
        self,
        crawler: Crawler,
        settings: Settings,
        sync_delay: timedelta | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self.crawler = crawler
        self.settings = settings
        self.lock = lock or asyncio.Lock()
        self.sync_delay = sync_delay if sync_delay is not None else settings.webhook_sync_delay
        self._pending: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self.passes = 0

    def notify(self) -> None:
        """Signal new work; a signal that is already pending absorbs this one."""
        try:
            self._pending.put_nowait(None)
        except asyncio.QueueFull:
            logger.debug("Sync already pending, notification coalesced")
        else:
            logger.debug("Sync worker notified")

    def _drain(self) -> None:
        while not self._pending.empty():
            self._pending.get_nowait()

    async def run(self) -> None:
        """Serve notifications until cancelled."""
        logger.info("Sync worker started (delay %s)", format_duration(self.sync_delay))
        try:
            while True:
                await self._pending.get()
                if self.sync_delay > timedelta(0):
                    await asyncio.sleep(self.sync_delay.total_seconds())
                    # Signals raised during the delay are served by this pass
                    self._drain()
                try:
                    await self.process_once()
                except (
                    NtnsyncError,
                    httpx.HTTPError,
                    subprocess.CalledProcessError,
                    OSError,
                    ValidationError,
                ) as exc:
                    logger.error("Sync pass failed: %s", exc)
        finally:
            logger.info("Sync worker stopped")

    async def process_once(self) -> ProcessResult:
        logger.info("Sync worker processing queue")
        async with self.lock:
            result = await run_sync(self.crawler, self.settings)
        self.passes += 1
        return result
