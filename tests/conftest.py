"""Shared test fixtures for ntnsync."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from ntnsync.config import Settings
from ntnsync.exceptions import DatabaseObjectError, NotionAPIError
from ntnsync.filesystem.store import LocalStore
from ntnsync.schemas.notion import Block, Database, Page, User, normalize_page_id
from ntnsync.services.crawler import Crawler
from ntnsync.services.notion_client import BlockFetchResult, SearchResult
from ntnsync.services.process_service import ProcessResult, process_queue
from ntnsync.services.root_service import reconcile_root_md

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

ROOT_ID = "1" * 32
CHILD_ID = "2" * 32
GRANDCHILD_ID = "3" * 32
BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def page_id(n: int) -> str:
    """A valid 32-char hex id derived from *n*."""
    return f"{n:032x}"


def paragraph(text: str, block_id: str) -> dict[str, Any]:
    return {
        "id": block_id,
        "type": "paragraph",
        "paragraph": {"rich_text": [{"type": "text", "plain_text": text}]},
    }


class FakeNotionClient:
    """In-memory stand-in for NotionClient driven by a dict of pages."""

    def __init__(self) -> None:
        self.pages: dict[str, dict[str, Any]] = {}
        self.databases: dict[str, dict[str, Any]] = {}
        self.rows: dict[str, list[str]] = {}
        self.blocks: dict[str, list[dict[str, Any]]] = {}
        self.users: dict[str, User] = {}
        self.search_page_size = 100
        self.search_calls = 0
        self.fetched: list[str] = []
        self.errors: dict[str, Exception] = {}

    # ── Setup ────────────────────────────────────────

    def add_page(
        self,
        item_id: str,
        title: str,
        parent_id: str = "",
        edited: datetime = BASE_TIME,
        body: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Register a page; a child_page block is appended to its parent's body."""
        parent: dict[str, Any] = (
            {"type": "page_id", "page_id": parent_id}
            if parent_id
            else {"type": "workspace", "workspace": True}
        )
        page = {
            "object": "page",
            "id": item_id,
            "last_edited_time": edited.isoformat(),
            "parent": parent,
            "properties": {"title": {"type": "title", "title": [{"plain_text": title}]}},
            "url": f"https://www.notion.so/{item_id}",
        }
        self.pages[item_id] = page
        self.blocks.setdefault(item_id, list(body or []))
        if parent_id:
            self.blocks.setdefault(parent_id, []).append(
                {"id": item_id, "type": "child_page", "child_page": {"title": title}}
            )
        return page

    def rename(self, item_id: str, title: str, edited: datetime) -> None:
        page = self.pages[item_id]
        page["properties"]["title"]["title"] = [{"plain_text": title}]
        page["last_edited_time"] = edited.isoformat()

    def add_database(
        self, item_id: str, title: str, parent_id: str = "", edited: datetime = BASE_TIME
    ) -> None:
        parent = {"type": "page_id", "page_id": parent_id} if parent_id else {"type": "workspace"}
        self.databases[item_id] = {
            "object": "database",
            "id": item_id,
            "title": [{"plain_text": title}],
            "last_edited_time": edited.isoformat(),
            "parent": parent,
            "data_sources": [{"id": item_id, "name": title}],
        }
        self.rows.setdefault(item_id, [])
        if parent_id:
            self.blocks.setdefault(parent_id, []).append(
                {"id": item_id, "type": "child_database", "child_database": {"title": title}}
            )

    # ── NotionClient surface ─────────────────────────

    def _check(self, item_id: str) -> str:
        norm = normalize_page_id(item_id)
        if norm in self.errors:
            raise self.errors[norm]
        return norm

    async def get_page(self, item_id: str) -> Page:
        norm = self._check(item_id)
        self.fetched.append(norm)
        if norm in self.databases:
            raise DatabaseObjectError(norm)
        if norm not in self.pages:
            raise NotionAPIError(404, "object_not_found", f"page {norm} not found")
        return Page.model_validate(self.pages[norm])

    async def get_database(self, database_id: str) -> Database:
        norm = self._check(database_id)
        if norm not in self.databases:
            raise NotionAPIError(404, "object_not_found", f"database {norm} not found")
        return Database.model_validate(self.databases[norm])

    async def query_database(self, database_id: str) -> list[Page]:
        norm = normalize_page_id(database_id)
        return [Page.model_validate(self.pages[row]) for row in self.rows.get(norm, [])]

    async def get_block(self, block_id: str) -> Block:
        msg = f"block {block_id} not found"
        raise NotionAPIError(404, "object_not_found", msg)

    async def get_all_block_children(self, block_id: str, max_depth: int = 0) -> BlockFetchResult:
        norm = self._check(block_id)
        blocks = [Block.model_validate(raw) for raw in self.blocks.get(norm, [])]
        return BlockFetchResult(blocks=blocks)

    async def search(
        self,
        query: str = "",
        filter_type: str | None = None,
        stop: Callable[[list[SearchResult]], bool] | None = None,
    ) -> list[SearchResult]:
        items: list[SearchResult] = [Page.model_validate(raw) for raw in self.pages.values()]
        items += [Database.model_validate(raw) for raw in self.databases.values()]
        items.sort(key=lambda item: item.last_edited_time or BASE_TIME, reverse=True)
        found: list[SearchResult] = []
        for start in range(0, len(items), self.search_page_size):
            self.search_calls += 1
            found.extend(items[start : start + self.search_page_size])
            if stop is not None and stop(found):
                break
        return found

    async def get_user(self, user_id: str) -> User:
        if user_id not in self.users:
            raise NotionAPIError(404, "object_not_found", "user not found")
        return self.users[user_id]

    async def aclose(self) -> None:
        return None


def _no_downloads(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {"store_path": tmp_path / "store"}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings: Settings) -> LocalStore:
    return LocalStore(settings.store_path, settings)


@pytest.fixture
def notion() -> FakeNotionClient:
    return FakeNotionClient()


@pytest.fixture
async def crawler(
    notion: FakeNotionClient, store: LocalStore, settings: Settings
) -> AsyncGenerator[Crawler]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(_no_downloads))
    crawler = Crawler(notion, store, settings, http_client=http)  # type: ignore[arg-type]
    yield crawler
    await http.aclose()


def write_root_md(store: LocalStore, *lines: str) -> None:
    """Write root.md straight into the working tree."""
    (store.root / "root.md").write_text("# Root Pages\n\n" + "".join(f"{line}\n" for line in lines))


def root_line(item_id: str, folder: str = "docs", enabled: bool = True) -> str:
    box = "[x]" if enabled else "[ ]"
    return f"- {box} **{folder}**: https://www.notion.so/Page-{item_id}"


@pytest.fixture
def workspace(notion: FakeNotionClient, store: LocalStore) -> FakeNotionClient:
    """Root -> Child -> Grandchild, with the root enabled in folder ``docs``."""
    notion.add_page(ROOT_ID, "Root", body=[paragraph("Welcome", page_id(900))])
    notion.add_page(CHILD_ID, "Child", ROOT_ID, BASE_TIME - timedelta(hours=1))
    notion.add_page(GRANDCHILD_ID, "Grandchild", CHILD_ID, BASE_TIME - timedelta(hours=2))
    write_root_md(store, root_line(ROOT_ID))
    return notion


async def sync_all(crawler: Crawler) -> ProcessResult:
    """Reconcile root.md and drain the queue."""
    reconcile_root_md(crawler)
    return await process_queue(crawler)
