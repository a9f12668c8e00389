"""root.md: the operator-maintained list of root pages.

Each root is a task-list line::

    - [x] **folder**: https://www.notion.so/Page-Title-0123456789abcdef0123456789abcdef

A checked box enables the root. Reconciliation turns the file into root
registries and queues roots that have never been synced.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ntnsync.exceptions import DatabaseObjectError, InvalidPageIdError, NtnsyncError
from ntnsync.schemas.queue import QueueEntry, QueuePage, QueueType
from ntnsync.schemas.registry import PageRegistry
from ntnsync.services.notion_client import parse_page_id_or_url
from ntnsync.services.slug_service import validate_folder_name

if TYPE_CHECKING:
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)

ROOT_MD = "root.md"
ROOT_MD_TEMPLATE = "# Root Pages\n\n"
NOTION_URL = "https://www.notion.so"

_ENTRY_RE = re.compile(r"^- \[([ xX])\] \*\*([^*]+)\*\*:\s*(.+)$")


@dataclass
class RootEntry:
    folder: str
    enabled: bool
    url: str
    page_id: str

    def format(self) -> str:
        checkbox = "[x]" if self.enabled else "[ ]"
        return f"- {checkbox} **{self.folder}**: {self.url}"


def parse_root_md(content: str) -> list[RootEntry]:
    """Parse root entries; lines that are not valid entries are ignored."""
    entries: list[RootEntry] = []
    for line in content.splitlines():
        match = _ENTRY_RE.match(line.strip())
        if match is None:
            continue
        folder = match.group(2).strip()
        url = match.group(3).strip()
        try:
            page_id = parse_page_id_or_url(url)
        except InvalidPageIdError as exc:
            logger.warning("Ignoring root.md line %r: %s", line, exc)
            continue
        entries.append(
            RootEntry(folder=folder, enabled=match.group(1) in "xX", url=url, page_id=page_id)
        )
    return entries


def format_root_md(entries: list[RootEntry]) -> str:
    return ROOT_MD_TEMPLATE + "".join(entry.format() + "\n" for entry in entries)


def dedupe_entries(entries: list[RootEntry]) -> list[RootEntry]:
    """Keep the first entry for each page id."""
    seen: set[str] = set()
    unique: list[RootEntry] = []
    for entry in entries:
        if entry.page_id in seen:
            logger.warning(
                "Duplicate page %s in root.md (folder %s), dropping it", entry.page_id, entry.folder
            )
            continue
        seen.add(entry.page_id)
        unique.append(entry)
    return unique


def read_root_md(crawler: Crawler) -> list[RootEntry] | None:
    """Return the entries of root.md, or None when the file does not exist."""
    reader = crawler.tx if crawler.tx is not None else crawler.store
    try:
        return parse_root_md(reader.read(ROOT_MD).decode("utf-8"))
    except FileNotFoundError:
        return None


def enabled_root_ids(crawler: Crawler) -> set[str]:
    return {entry.page_id for entry in read_root_md(crawler) or [] if entry.enabled}


def _reconcile_entry(crawler: Crawler, entry: RootEntry) -> bool:
    """Create or update the root registry; returns True when the root was never synced."""
    registry = crawler.registry.find_page_by_id(entry.page_id)
    if registry is None:
        logger.info(
            "Creating registry for root %s (folder %s, enabled %s)",
            entry.page_id,
            entry.folder,
            entry.enabled,
        )
        registry = PageRegistry(id=entry.page_id, folder=entry.folder)
    registry.is_root = True
    registry.enabled = entry.enabled
    registry.folder = entry.folder
    registry.parent_id = ""
    crawler.registry.save_page(registry)
    return registry.last_synced is None


def reconcile_root_md(crawler: Crawler) -> int:
    """Sync root registries with root.md and queue never-synced enabled roots.

    Creates the template when root.md is missing and rewrites the file when
    it had duplicate entries. Returns the number of roots queued.
    """
    tx = crawler.ensure_transaction()
    crawler.load_state()
    entries = read_root_md(crawler)
    if entries is None:
        logger.info("Creating empty %s", ROOT_MD)
        tx.write(ROOT_MD, ROOT_MD_TEMPLATE)
        crawler.apply()
        return 0

    unique = dedupe_entries(entries)
    if len(unique) != len(entries):
        logger.info("Rewriting %s without duplicates", ROOT_MD)
        tx.write(ROOT_MD, format_root_md(unique))

    to_queue: dict[str, list[QueuePage]] = {}
    for entry in unique:
        try:
            validate_folder_name(entry.folder)
        except NtnsyncError as exc:
            logger.warning("Ignoring root %s: %s", entry.page_id, exc)
            continue
        never_synced = _reconcile_entry(crawler, entry)
        crawler.state.add_folder(entry.folder)
        if entry.enabled and never_synced and not crawler.queue.is_queued(entry.page_id):
            to_queue.setdefault(entry.folder, []).append(QueuePage(id=entry.page_id))

    queued = 0
    for folder, pages in to_queue.items():
        crawler.queue.create(QueueEntry(type=QueueType.INIT, folder=folder, pages=pages))
        logger.info("Queued %d root page(s) for initial sync in %s", len(pages), folder)
        queued += len(pages)

    crawler.save_state()
    crawler.apply()
    logger.info("root.md reconciled: %d root(s), %d queued", len(unique), queued)
    return queued


async def add_root(
    crawler: Crawler, page_id_or_url: str, folder: str, enabled: bool = True
) -> RootEntry:
    """Append a root to root.md and reconcile it.

    Raises InvalidPageIdError, InvalidFolderNameError, or NtnsyncError when
    the page is already listed.
    """
    page_id = parse_page_id_or_url(page_id_or_url)
    validate_folder_name(folder)
    tx = crawler.ensure_transaction()
    try:
        content = tx.read(ROOT_MD).decode("utf-8")
    except FileNotFoundError:
        content = ROOT_MD_TEMPLATE
    entries = parse_root_md(content)
    for entry in entries:
        if entry.page_id == page_id:
            msg = f"page {page_id} is already in {ROOT_MD} (folder {entry.folder})"
            raise NtnsyncError(msg)

    try:
        title = (await crawler.client.get_page(page_id)).display_title
    except DatabaseObjectError:
        title = (await crawler.client.get_database(page_id)).display_title

    url = page_id_or_url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"{NOTION_URL}/{page_id}"
    entry = RootEntry(folder=folder, enabled=enabled, url=url, page_id=page_id)
    if content and not content.endswith("\n"):
        content += "\n"
    tx.write(ROOT_MD, content + entry.format() + "\n")
    logger.info("Added root %s (%s) to folder %s", title, page_id, folder)
    reconcile_root_md(crawler)
    return entry
