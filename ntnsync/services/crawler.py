"""Crawler: fetches Notion pages and materializes them into the store.

The crawler owns the active transaction, the queue manager, the registry
service and the in-memory sync state. The operator-facing operations (pull,
queue processing, root.md reconciliation, cleanup, reindex) live in their
own service modules and take a crawler as their first argument.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from ntnsync.config import Settings
from ntnsync.exceptions import CycleError, DatabaseObjectError, NotionAPIError, NtnsyncError
from ntnsync.schemas.notion import Block, Database, Page, Parent, normalize_page_id
from ntnsync.schemas.queue import QueueEntry, QueuePage, QueueType
from ntnsync.schemas.registry import PageRegistry, SyncState
from ntnsync.services import file_service
from ntnsync.services.converter_service import (
    ConvertOptions,
    collect_file_urls,
    convert_database,
    convert_page,
)
from ntnsync.services.datetime_service import now_utc
from ntnsync.services.queue_service import QueueManager
from ntnsync.services.registry_service import RegistryService
from ntnsync.services.slug_service import sanitize_filename, validate_folder_name

if TYPE_CHECKING:
    from ntnsync.filesystem.store import Store, Transaction
    from ntnsync.services.notion_client import NotionClient

logger = logging.getLogger(__name__)

DEFAULT_FOLDER = "default"
MAX_PARENT_DEPTH = 50
SHORT_ID_LENGTH = 4
DOWNLOAD_TIMEOUT_SECONDS = 60.0

_CHILD_TYPES = frozenset({"child_page", "child_database"})


@dataclass
class ParentTrace:
    """Result of walking a page's ancestors up to the first synced one."""

    missing: list[Page] = field(default_factory=list)
    folder: str = DEFAULT_FOLDER
    found_root: bool = False


@dataclass
class FetchedItem:
    """A page or database fetched from Notion, ready to be written."""

    id: str
    type: str  # "page" | "database"
    title: str
    last_edited: datetime | None
    parent: Parent
    children: list[str] = field(default_factory=list)
    page: Page | None = None
    blocks: list[Block] = field(default_factory=list)
    database: Database | None = None
    rows: list[Page] = field(default_factory=list)
    simplified_depth: int = 0

    @property
    def file_urls(self) -> list[str]:
        return collect_file_urls(self.blocks)


def find_child_pages(blocks: list[Block]) -> list[str]:
    """Return ids of child pages and child databases in document order."""
    children: list[str] = []
    for block in blocks:
        if block.type in _CHILD_TYPES:
            child_id = normalize_page_id(block.id)
            if child_id not in children:
                children.append(child_id)
        for child_id in find_child_pages(block.children):
            if child_id not in children:
                children.append(child_id)
    return children


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _database_as_page(database: Database) -> Page:
    return Page(
        id=database.id,
        created_time=database.created_time,
        last_edited_time=database.last_edited_time,
        created_by=database.created_by,
        last_edited_by=database.last_edited_by,
        parent=database.parent,
        archived=database.archived,
        in_trash=database.in_trash,
        properties={
            "title": {"type": "title", "title": [{"plain_text": database.display_title}]}
        },
        url=database.url,
    )


class Crawler:
    """Materializes Notion pages into a store through one shared transaction."""

    def __init__(
        self,
        client: NotionClient,
        store: Store,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings or store.settings or Settings()
        self.tx: Transaction | None = None
        self.queue = QueueManager(store)
        self.registry = RegistryService(store, client=client)
        self.state = SyncState()
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def http(self) -> httpx.AsyncClient:
        """HTTP client used for attachment downloads."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True
            )
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # ── Transaction and state ────────────────────────

    def set_transaction(self, tx: Transaction | None) -> None:
        self.tx = tx
        self.queue.set_transaction(tx)
        self.registry.set_transaction(tx)

    def ensure_transaction(self) -> Transaction:
        tx = self.tx
        if tx is None:
            tx = self.store.begin()
            self.set_transaction(tx)
        return tx

    def apply(self) -> None:
        """Flush staged operations to the working tree without committing."""
        if self.tx is not None:
            self.tx.apply()

    def commit(self, message: str) -> str | None:
        """Apply and commit staged operations; returns the commit hash or None."""
        return self.ensure_transaction().commit(message)

    def checkpoint(self, message: str) -> str | None:
        """Commit like :meth:`commit`, but log and swallow git failures."""
        try:
            return self.commit(message)
        except subprocess.CalledProcessError as exc:
            logger.error("Commit failed: %s", (exc.stderr or "").strip() or exc)
            return None

    def rollback(self) -> None:
        if self.tx is not None:
            self.tx.rollback()
        self.set_transaction(None)

    def load_state(self) -> SyncState:
        self.state = self.registry.load_state()
        return self.state

    def save_state(self) -> None:
        self.ensure_transaction()
        self.registry.save_state(self.state)

    # ── Hierarchy ────────────────────────────────────

    def is_root_enabled(self, page_id: str) -> tuple[bool, str]:
        """Walk registries up to the owning root.

        Returns ``(enabled, root_id)``; ``root_id`` is empty when the chain
        ends without reaching a root. Raises CycleError on a loop.
        """
        visited: set[str] = set()
        current = normalize_page_id(page_id)
        while current:
            if current in visited:
                msg = f"cycle detected in parent chain at {current}"
                raise CycleError(msg)
            visited.add(current)
            registry = self.registry.find_page_by_id(current)
            if registry is None:
                return False, ""
            if registry.is_root:
                return registry.enabled, current
            current = registry.parent_id
        return False, ""

    async def resolve_block_to_page(self, block_id: str) -> tuple[str, str]:
        """Follow block parents until a page, a database or the workspace.

        Returns ``(id, kind)`` where kind is ``page_id``, ``database_id`` or
        ``workspace`` (with an empty id).
        """
        current = block_id
        for depth in range(1, MAX_PARENT_DEPTH + 1):
            block = await self.client.get_block(current)
            parent = block.parent
            if parent.type == "page_id":
                logger.debug(
                    "Resolved block %s to page %s (depth %d)", block_id, parent.page_id, depth
                )
                return normalize_page_id(parent.page_id), "page_id"
            if parent.type in ("database_id", "data_source_id"):
                database_id = parent.database_id or parent.data_source_id
                return normalize_page_id(database_id), "database_id"
            if parent.type == "block_id":
                current = parent.block_id
                continue
            if parent.is_workspace_level:
                return "", "workspace"
            msg = f"unexpected block parent type: {parent.type}"
            raise NtnsyncError(msg)
        msg = f"block {block_id} is nested deeper than {MAX_PARENT_DEPTH} levels"
        raise NtnsyncError(msg)

    async def _parent_ref(self, item_id: str, parent: Parent) -> str:
        """Return the page or database id that contains *item_id*, or "" for top level."""
        if parent.type != "block_id":
            return normalize_page_id(parent.id)
        try:
            resolved, kind = await self.resolve_block_to_page(parent.block_id)
        except (NotionAPIError, NtnsyncError, httpx.HTTPError) as exc:
            logger.warning(
                "Failed to resolve block parent %s of %s, treating as top level: %s",
                parent.block_id,
                item_id,
                exc,
            )
            return ""
        if kind == "workspace":
            return ""
        return resolved

    async def trace_parent_chain(self, item_id: str, parent: Parent, folder: str) -> ParentTrace:
        """Walk ancestors of *item_id* until one with a registry.

        The folder of that ancestor wins; ``found_root`` reports whether it
        belongs to an enabled root. Ancestors fetched on the way are
        returned in ``missing``, nearest first.
        """
        trace = ParentTrace(folder=folder or DEFAULT_FOLDER)
        visited = {normalize_page_id(item_id)}
        parent_id = await self._parent_ref(item_id, parent)
        while parent_id:
            if parent_id in visited:
                msg = f"cycle detected in parent chain at {parent_id}"
                raise CycleError(msg)
            visited.add(parent_id)

            registry = self.registry.find_page_by_id(parent_id)
            if registry is not None:
                enabled, root_id = self.is_root_enabled(parent_id)
                logger.debug(
                    "Parent %s of %s is synced (root %s, enabled %s)",
                    parent_id,
                    item_id,
                    root_id or "-",
                    enabled,
                )
                trace.folder = registry.folder or trace.folder
                trace.found_root = enabled
                return trace

            try:
                ancestor = await self.client.get_page(parent_id)
            except DatabaseObjectError:
                ancestor = _database_as_page(await self.client.get_database(parent_id))
            trace.missing.append(ancestor)
            parent_id = await self._parent_ref(ancestor.id, ancestor.parent)

        logger.debug("Parent chain of %s reaches the workspace", item_id)
        return trace

    # ── Paths ────────────────────────────────────────

    def _parent_dir(self, parent_id: str, folder: str) -> str:
        parent = self.registry.find_page_by_id(parent_id) if parent_id else None
        if parent is None or not parent.file_path:
            return folder
        base = posixpath.basename(parent.file_path).removesuffix(".md")
        return posixpath.join(posixpath.dirname(parent.file_path), base)

    def resolve_filename_conflict(self, directory: str, name: str, item_id: str) -> str:
        """Append ``-<id prefix>`` when another page already uses *name* in *directory*."""
        own_id = normalize_page_id(item_id)
        used = {
            posixpath.basename(registry.file_path).removesuffix(".md").lower()
            for registry in self.registry.list_page_registries()
            if registry.id != own_id
            and registry.file_path
            and posixpath.dirname(registry.file_path) == directory
        }
        if name.lower() not in used:
            return name
        return f"{name}-{own_id[:SHORT_ID_LENGTH]}"

    def compute_file_path(
        self, item_id: str, title: str, folder: str, is_root: bool, parent_id: str
    ) -> str:
        """Return the markdown path for an item.

        A path recorded in the registry is kept forever. New items go under
        their parent's directory (``<parent dir>/<parent basename>/``), or
        directly in the folder for roots and top-level items.
        """
        existing = self.registry.find_page_by_id(item_id)
        if existing is not None and existing.file_path:
            return existing.file_path
        directory = folder if is_root or not parent_id else self._parent_dir(parent_id, folder)
        name = self.resolve_filename_conflict(directory, sanitize_filename(title), item_id)
        return posixpath.join(directory, f"{name}.md")

    # ── Fetching ─────────────────────────────────────

    async def _fetch_page(self, page: Page) -> FetchedItem:
        page_id = normalize_page_id(page.id)
        await self.registry.resolve_user(page.created_by)
        await self.registry.resolve_user(page.last_edited_by)
        depth = self.settings.block_depth
        result = await self.client.get_all_block_children(page_id, depth)
        if result.was_limited:
            logger.debug("Page %s simplified at block depth %d", page_id, depth)
        return FetchedItem(
            id=page_id,
            type="page",
            title=page.display_title,
            last_edited=page.last_edited_time,
            parent=page.parent,
            children=find_child_pages(result.blocks),
            page=page,
            blocks=result.blocks,
            simplified_depth=depth if result.was_limited else 0,
        )

    async def _fetch_database(self, database_id: str) -> FetchedItem:
        database = await self.client.get_database(database_id)
        await self.registry.resolve_user(database.created_by)
        await self.registry.resolve_user(database.last_edited_by)
        rows = await self.client.query_database(database_id)
        return FetchedItem(
            id=normalize_page_id(database_id),
            type="database",
            title=database.display_title,
            last_edited=database.last_edited_time,
            parent=database.parent,
            children=[normalize_page_id(row.id) for row in rows],
            database=database,
            rows=rows,
        )

    async def fetch_item(self, item_id: str) -> FetchedItem:
        """Fetch a page with its blocks, or a database with its rows."""
        try:
            page = await self.client.get_page(item_id)
        except DatabaseObjectError:
            logger.info("%s is a database, processing as database", item_id)
            return await self._fetch_database(item_id)
        return await self._fetch_page(page)

    # ── Materialization ──────────────────────────────

    async def process_page(
        self,
        page_id: str,
        folder: str,
        is_init: bool = False,
        expected_parent_id: str = "",
    ) -> int:
        """Fetch one page or database and write it with its registry.

        Items under a disabled root are skipped, as are new items whose
        parent chain does not reach an enabled root. Returns the number of
        markdown files written, parents included.
        """
        page_id = normalize_page_id(page_id)
        self.ensure_transaction()
        try:
            enabled, root_id = self.is_root_enabled(page_id)
        except CycleError as exc:
            logger.warning("Cannot determine root of %s: %s", page_id, exc)
            enabled, root_id = False, ""
        if root_id and not enabled:
            logger.info("Skipping %s: root %s is disabled", page_id, root_id)
            return 0

        started = time.monotonic()
        item = await self.fetch_item(page_id)
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug("Fetched %s %s in %.0fms", item.type, page_id, elapsed_ms)

        existing = self.registry.find_page_by_id(page_id)
        if existing is None:
            try:
                trace = await self.trace_parent_chain(page_id, item.parent, folder)
            except CycleError as exc:
                logger.warning("Failed to trace parent chain of %s: %s", page_id, exc)
                return 0
            if not trace.found_root:
                logger.info("Skipping %s: not under any enabled root in root.md", page_id)
                return 0
            if trace.folder != folder:
                logger.debug("Using folder %s from parent chain of %s", trace.folder, page_id)
            folder = trace.folder
        elif existing.folder:
            folder = existing.folder

        return await self.write_and_register(item, folder, is_init, expected_parent_id)

    async def _ensure_parent(
        self, item_id: str, parent_id: str, expected_parent_id: str, folder: str, is_init: bool
    ) -> tuple[str, int]:
        """Make sure the parent is synced before its child.

        Returns the parent id to record (empty when the child is placed at
        top level for now) and the number of files written for the parent.
        """
        if expected_parent_id and normalize_page_id(expected_parent_id) == parent_id:
            return parent_id, 0
        if self.registry.find_page_by_id(parent_id) is not None:
            return parent_id, 0
        if is_init:
            logger.info("Parent %s of %s is not synced yet, queuing it", parent_id, item_id)
            self.queue.create(
                QueueEntry(type=QueueType.INIT, folder=folder, pages=[QueuePage(id=parent_id)])
            )
            return "", 0
        logger.info("Fetching parent %s of %s first", parent_id, item_id)
        written = await self.process_page(parent_id, folder)
        return parent_id, written

    def _render(self, item: FetchedItem, options: ConvertOptions) -> bytes:
        if item.page is not None:
            return convert_page(item.page, item.blocks, options)
        if item.database is None:
            msg = f"nothing fetched for {item.id}"
            raise NtnsyncError(msg)
        return convert_database(item.database, item.rows, options)

    async def write_and_register(
        self,
        item: FetchedItem,
        folder: str,
        is_init: bool = False,
        expected_parent_id: str = "",
    ) -> int:
        """Write *item* under *folder*, save its registry and queue new children.

        Re-writing an unchanged item (same ``last_edited``, same rendered
        content) leaves both the file and the registry untouched.
        """
        tx = self.ensure_transaction()
        existing = self.registry.find_page_by_id(item.id)
        is_root = existing is not None and existing.is_root
        enabled = existing.enabled if existing is not None and is_root else False
        files_written = 0

        parent_id = "" if is_root else await self._parent_ref(item.id, item.parent)
        if parent_id:
            parent_id, written = await self._ensure_parent(
                item.id, parent_id, expected_parent_id, folder, is_init
            )
            files_written += written

        file_path = self.compute_file_path(item.id, item.title, folder, is_root, parent_id)
        file_map = await file_service.download_files(self, item.file_urls, file_path, item.id)
        options = ConvertOptions(
            folder=folder,
            page_title=item.title,
            file_path=file_path,
            notion_type=item.type,
            parent_id=parent_id,
            is_root=is_root,
            simplified_depth=item.simplified_depth,
            file_processor=(lambda url: file_map.get(url, url)) if file_map else None,
        )

        unchanged = False
        last_synced = now_utc()
        if (
            existing is not None
            and existing.last_synced is not None
            and existing.last_edited == item.last_edited
        ):
            options.last_synced = existing.last_synced
            content = self._render(item, options)
            digest = content_hash(content)
            unchanged = (
                digest == existing.content_hash
                and existing.file_path == file_path
                and tx.exists(file_path)
            )
            if unchanged:
                last_synced = existing.last_synced
        if not unchanged:
            options.last_synced = last_synced
            content = self._render(item, options)
            digest = content_hash(content)
            tx.write(file_path, content)
            files_written += 1
            logger.info("Saved %s %s (%s) to %s", item.type, item.id, item.title, file_path)
        else:
            logger.debug("%s %s unchanged, keeping %s", item.type, item.id, file_path)

        self.registry.save_page(
            PageRegistry(
                id=item.id,
                type=item.type,
                folder=folder,
                file_path=file_path,
                title=item.title,
                last_edited=item.last_edited,
                last_synced=last_synced,
                is_root=is_root,
                enabled=enabled,
                parent_id=parent_id,
                children=item.children,
                content_hash=digest,
            )
        )
        self.state.add_folder(folder)
        self._queue_children(item, folder)
        return files_written

    def _queue_children(self, item: FetchedItem, folder: str) -> None:
        new_children: list[str] = []
        for child_id in item.children:
            child = self.registry.find_page_by_id(child_id)
            if child is None:
                new_children.append(child_id)
            elif not child.is_root and not child.parent_id:
                # Placed at top level while this parent was still unsynced
                child.parent_id = item.id
                self.registry.save_page(child)
        if new_children:
            self.queue.create(
                QueueEntry(
                    type=QueueType.INIT,
                    folder=folder,
                    pages=[QueuePage(id=child_id) for child_id in new_children],
                    parent_id=item.id,
                )
            )
            logger.debug("Queued %d child page(s) of %s", len(new_children), item.id)

    # ── Single-page operations ───────────────────────

    async def get_page(self, page_id: str, folder: str = "") -> int:
        """Fetch one page right away, together with any unsynced ancestors.

        The folder comes from the nearest synced ancestor, else *folder*,
        else ``default``. Returns the number of files written.
        """
        page_id = normalize_page_id(page_id)
        self.ensure_transaction()
        self.load_state()

        item = await self.fetch_item(page_id)
        trace = await self.trace_parent_chain(page_id, item.parent, folder)
        validate_folder_name(trace.folder)
        logger.info(
            "Getting %s into folder %s (%d unsynced ancestor(s))",
            page_id,
            trace.folder,
            len(trace.missing),
        )
        self.state.add_folder(trace.folder)

        written = 0
        for ancestor in reversed(trace.missing):
            ancestor_item = await self.fetch_item(normalize_page_id(ancestor.id))
            written += await self.write_and_register(ancestor_item, trace.folder)
        written += await self.write_and_register(item, trace.folder)
        self.save_state()
        return written

    async def scan_page(self, page_id: str) -> int:
        """Queue the untracked child pages of a synced page; returns how many were queued."""
        page_id = normalize_page_id(page_id)
        registry = self.registry.find_page_by_id(page_id)
        if registry is None:
            msg = f"page {page_id} not found in registry (use 'add' to add a new root page)"
            raise NtnsyncError(msg)
        self.load_state()

        result = await self.client.get_all_block_children(page_id)
        children = find_child_pages(result.blocks)
        new_children = [child for child in children if self.registry.find_page_by_id(child) is None]
        logger.info(
            "Page %s has %d child page(s), %d untracked",
            page_id,
            len(children),
            len(new_children),
        )
        if new_children:
            self.ensure_transaction()
            self.queue.create(
                QueueEntry(
                    type=QueueType.INIT,
                    folder=registry.folder,
                    pages=[QueuePage(id=child) for child in new_children],
                    parent_id=page_id,
                )
            )
        return len(new_children)
