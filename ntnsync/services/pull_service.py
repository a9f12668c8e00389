"""Discovery: find pages edited since the last pull and queue them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ntnsync.exceptions import CycleError, NoPreviousPullError
from ntnsync.schemas.notion import normalize_page_id
from ntnsync.schemas.queue import QueueEntry, QueuePage, QueueType
from ntnsync.services.datetime_service import format_rfc3339, now_utc

if TYPE_CHECKING:
    from ntnsync.services.crawler import Crawler
    from ntnsync.services.notion_client import SearchResult

logger = logging.getLogger(__name__)


@dataclass
class PullOptions:
    folder: str = ""
    since: timedelta | None = None
    max_pages: int = 0
    all: bool = False
    dry_run: bool = False


@dataclass
class PullResult:
    pages_found: int = 0
    pages_queued: int = 0
    pages_skipped: int = 0
    new_pages: int = 0
    updated_pages: int = 0
    cutoff: datetime | None = None
    oldest_edit: datetime | None = None
    newest_edit: datetime | None = None
    early_stopped: bool = False


def _is_after(value: datetime | None, bound: datetime) -> bool:
    return value is not None and value > bound


def resolve_cutoff(crawler: Crawler, since: timedelta | None) -> datetime:
    """Explicit *since* wins, then the last pull time; a first pull needs *since*."""
    if since is not None and since > timedelta(0):
        return now_utc() - since
    if crawler.state.last_pull_time is not None:
        return crawler.state.last_pull_time
    raise NoPreviousPullError


async def pull(crawler: Crawler, options: PullOptions | None = None) -> PullResult:
    """Scan Notion newest-edit-first and queue pages changed since the cutoff.

    Tracked pages are queued as ``update`` records in their registry folder.
    With ``all``, untracked pages under an enabled root are queued as
    ``init`` records. The scan stops as soon as results reach the oldest
    edit time seen by the previous pull. The pull cursor is only saved when
    not a dry run.
    """
    options = options or PullOptions()
    crawler.load_state()
    cutoff = resolve_cutoff(crawler, options.since)
    boundary = crawler.state.oldest_pull_result
    logger.info(
        "Pulling changes since %s (folder=%s, all=%s, dry_run=%s)",
        format_rfc3339(cutoff),
        options.folder or "*",
        options.all,
        options.dry_run,
    )

    tracked = {registry.id: registry for registry in crawler.registry.list_page_registries()}
    logger.info("Found %d tracked page(s)", len(tracked))

    def reached_boundary(results: list[SearchResult]) -> bool:
        if boundary is None or not results:
            return False
        return not _is_after(results[-1].last_edited_time, boundary)

    results = await crawler.client.search(stop=reached_boundary)
    result = PullResult(pages_found=len(results), cutoff=cutoff)
    batches: dict[tuple[str, QueueType], list[QueuePage]] = {}

    for item in results:
        item_id = normalize_page_id(item.id)
        edited = item.last_edited_time
        if boundary is not None and not _is_after(edited, boundary):
            logger.info("Reached the oldest result of the previous pull, stopping")
            result.early_stopped = True
            break
        if not _is_after(edited, cutoff):
            result.pages_skipped += 1
            continue
        if options.max_pages > 0 and result.pages_queued >= options.max_pages:
            logger.info("Reached max pages limit (%d), stopping", options.max_pages)
            break

        registry = tracked.get(item_id)
        if registry is not None:
            folder = registry.folder
            queue_type = QueueType.UPDATE
        elif not options.all:
            logger.debug("Skipping untracked %s %s", item.object, item_id)
            result.pages_skipped += 1
            continue
        else:
            try:
                trace = await crawler.trace_parent_chain(item_id, item.parent, "")
            except CycleError as exc:
                logger.warning("Failed to trace parent chain of %s: %s", item_id, exc)
                result.pages_skipped += 1
                continue
            if not trace.found_root:
                logger.debug("Skipping %s: not under any enabled root", item_id)
                result.pages_skipped += 1
                continue
            folder = trace.folder
            queue_type = QueueType.INIT
            logger.info(
                "New %s discovered: %s (%s) in %s", item.object, item.display_title, item_id, folder
            )

        if options.folder and folder != options.folder:
            result.pages_skipped += 1
            continue

        if queue_type == QueueType.UPDATE:
            result.updated_pages += 1
        else:
            result.new_pages += 1
        batches.setdefault((folder, queue_type), []).append(
            QueuePage(id=item_id, last_edited=edited)
        )
        result.pages_queued += 1
        if result.oldest_edit is None or (edited is not None and edited < result.oldest_edit):
            result.oldest_edit = edited
        if result.newest_edit is None or (edited is not None and edited > result.newest_edit):
            result.newest_edit = edited

    if options.dry_run:
        logger.info("Dry run: %d page(s) would be queued", result.pages_queued)
        return result

    crawler.ensure_transaction()
    for (folder, queue_type), pages in batches.items():
        crawler.state.add_folder(folder)
        crawler.queue.create(QueueEntry(type=queue_type, folder=folder, pages=pages))
        logger.info("Queued %d %s page(s) in folder %s", len(pages), queue_type, folder)

    crawler.state.last_pull_time = now_utc()
    crawler.state.oldest_pull_result = result.oldest_edit or cutoff
    crawler.save_state()
    crawler.apply()
    logger.info(
        "Pull complete: found=%d queued=%d skipped=%d new=%d updated=%d",
        result.pages_found,
        result.pages_queued,
        result.pages_skipped,
        result.new_pages,
        result.updated_pages,
    )
    return result
