"""Tests for materializing pages: paths, parents, idempotence."""

from __future__ import annotations

from datetime import timedelta

import frontmatter
import pytest

from ntnsync.exceptions import NtnsyncError
from ntnsync.filesystem.store import LocalStore
from ntnsync.schemas.notion import Block
from ntnsync.schemas.registry import PageRegistry
from ntnsync.services.crawler import Crawler, find_child_pages
from ntnsync.services.process_service import ProcessOptions, process_queue
from ntnsync.services.root_service import reconcile_root_md
from tests.conftest import (
    BASE_TIME,
    CHILD_ID,
    GRANDCHILD_ID,
    ROOT_ID,
    FakeNotionClient,
    page_id,
    root_line,
    sync_all,
    write_root_md,
)


class TestFindChildPages:
    def test_nested_and_deduplicated(self) -> None:
        inner = Block.model_validate({"id": page_id(2), "type": "child_page", "child_page": {}})
        toggle = Block.model_validate({"id": page_id(9), "type": "toggle", "toggle": {}})
        toggle.children = [inner]
        blocks = [
            Block.model_validate({"id": page_id(1), "type": "child_database"}),
            toggle,
            Block.model_validate({"id": page_id(2), "type": "child_page"}),
        ]
        assert find_child_pages(blocks) == [page_id(1), page_id(2)]


class TestInitialSync:
    async def test_materializes_hierarchy(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        result = await sync_all(crawler)
        assert result.pages_processed == 3
        assert result.files_written == 3
        assert store.exists("docs/root.md")
        assert store.exists("docs/root/child.md")
        assert store.exists("docs/root/child/grandchild.md")
        assert crawler.queue.list() == []

    async def test_registries_link_parents_and_children(
        self, crawler: Crawler, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        root = crawler.registry.find_page_by_id(ROOT_ID)
        child = crawler.registry.find_page_by_id(CHILD_ID)
        assert root is not None
        assert child is not None
        assert root.is_root
        assert root.enabled
        assert root.parent_id == ""
        assert root.children == [CHILD_ID]
        assert child.parent_id == ROOT_ID
        assert child.folder == "docs"
        assert not child.is_root
        assert child.last_synced is not None

    async def test_front_matter(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        post = frontmatter.loads(store.read("docs/root/child.md").decode())
        assert post["notion_id"] == CHILD_ID
        assert post["notion_folder"] == "docs"
        assert post["file_path"] == "docs/root/child.md"
        assert post["notion_parent_id"] == ROOT_ID
        assert post["is_root"] is False
        assert post["last_edited"] == "2026-03-01T11:00:00Z"
        assert post.content.startswith("# Child")

        root = frontmatter.loads(store.read("docs/root.md").decode())
        assert root["is_root"] is True
        assert "Welcome" in root.content
        assert f"<!-- page_id:{CHILD_ID} -->" in root.content

    async def test_folder_recorded_in_state(
        self, crawler: Crawler, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        assert crawler.load_state().folders == ["docs"]


class TestIdempotence:
    async def test_unchanged_resync_writes_nothing(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        assert crawler.commit("initial") is not None
        before = store.read("docs/root/child.md")

        crawler.queue.create_priority_entry(CHILD_ID, "docs")
        result = await process_queue(crawler)
        assert result.pages_processed == 1
        assert result.files_written == 0
        assert store.read("docs/root/child.md") == before
        assert crawler.commit("again") is None

    async def test_changed_page_is_rewritten(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        workspace.blocks[CHILD_ID] = [
            {
                "id": page_id(500),
                "type": "paragraph",
                "paragraph": {"rich_text": [{"type": "text", "plain_text": "New text"}]},
            }
        ]
        workspace.pages[CHILD_ID]["last_edited_time"] = (BASE_TIME + timedelta(hours=1)).isoformat()
        crawler.queue.create_priority_entry(CHILD_ID, "docs")
        result = await process_queue(crawler)
        assert result.files_written == 1
        assert "New text" in store.read("docs/root/child.md").decode()


class TestPathStability:
    async def test_rename_keeps_path(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        workspace.rename(CHILD_ID, "Renamed Child", BASE_TIME + timedelta(days=1))
        crawler.queue.create_priority_entry(CHILD_ID, "docs")
        await process_queue(crawler)

        registry = crawler.registry.find_page_by_id(CHILD_ID)
        assert registry is not None
        assert registry.file_path == "docs/root/child.md"
        assert registry.title == "Renamed Child"
        assert not store.exists("docs/root/renamed-child.md")
        assert "# Renamed Child" in store.read("docs/root/child.md").decode()

    async def test_name_conflict_gets_id_suffix(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        twin = "abcd" + "0" * 28
        workspace.add_page(twin, "Child", ROOT_ID)
        await sync_all(crawler)
        registry = crawler.registry.find_page_by_id(twin)
        assert registry is not None
        assert registry.file_path == "docs/root/child-abcd.md"
        assert store.exists("docs/root/child.md")


class TestRootGating:
    async def test_disabled_root_is_not_synced(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        write_root_md(store, root_line(ROOT_ID, enabled=False))
        result = await sync_all(crawler)
        assert result.pages_processed == 0
        assert not store.exists("docs/root.md")

    async def test_page_outside_roots_is_skipped(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        stray = page_id(4242)
        workspace.add_page(stray, "Stray")
        crawler.ensure_transaction()
        crawler.queue.create_priority_entry(stray, "docs")
        result = await process_queue(crawler)
        assert result.files_written == 0
        assert crawler.registry.find_page_by_id(stray) is None

    async def test_disabling_root_stops_updates(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        write_root_md(store, root_line(ROOT_ID, enabled=False))
        await sync_all(crawler)
        workspace.rename(CHILD_ID, "Changed", BASE_TIME + timedelta(days=1))
        crawler.queue.create_priority_entry(CHILD_ID, "docs")
        result = await process_queue(crawler)
        assert result.files_written == 0
        assert "# Child" in store.read("docs/root/child.md").decode()


class TestGetPage:
    async def test_fetches_missing_ancestors(
        self, crawler: Crawler, store: LocalStore, workspace: FakeNotionClient
    ) -> None:
        reconcile_root_md(crawler)
        await process_queue(crawler, ProcessOptions(max_pages=1))
        assert crawler.registry.find_page_by_id(CHILD_ID) is None

        written = await crawler.get_page(GRANDCHILD_ID)
        assert written == 2
        crawler.apply()
        assert store.exists("docs/root/child.md")
        assert store.exists("docs/root/child/grandchild.md")
        grandchild = crawler.registry.find_page_by_id(GRANDCHILD_ID)
        assert grandchild is not None
        assert grandchild.parent_id == CHILD_ID

    async def test_untracked_top_level_page_uses_folder(
        self, crawler: Crawler, store: LocalStore, notion: FakeNotionClient
    ) -> None:
        loose = page_id(31337)
        notion.add_page(loose, "Loose Page")
        await crawler.get_page(loose, "notes")
        crawler.apply()
        assert store.exists("notes/loose-page.md")
        assert crawler.state.folders == ["notes"]


class TestScanPage:
    async def test_queues_untracked_children(
        self, crawler: Crawler, workspace: FakeNotionClient
    ) -> None:
        await sync_all(crawler)
        extra = page_id(555)
        workspace.add_page(extra, "Extra", ROOT_ID)
        assert await crawler.scan_page(ROOT_ID) == 1
        entries = crawler.queue.entries()
        assert len(entries) == 1
        assert entries[0][1].page_ids == [extra]
        assert entries[0][1].parent_id == ROOT_ID

    async def test_unknown_page_raises(self, crawler: Crawler) -> None:
        with pytest.raises(NtnsyncError):
            await crawler.scan_page(page_id(1))


class TestIsRootEnabled:
    async def test_walks_to_root(self, crawler: Crawler) -> None:
        crawler.ensure_transaction()
        crawler.registry.save_page(PageRegistry(id=ROOT_ID, is_root=True, enabled=True))
        crawler.registry.save_page(PageRegistry(id=CHILD_ID, parent_id=ROOT_ID))
        crawler.registry.save_page(PageRegistry(id=GRANDCHILD_ID, parent_id=CHILD_ID))
        assert crawler.is_root_enabled(GRANDCHILD_ID) == (True, ROOT_ID)

    async def test_broken_chain(self, crawler: Crawler) -> None:
        crawler.ensure_transaction()
        crawler.registry.save_page(PageRegistry(id=CHILD_ID, parent_id=page_id(99)))
        assert crawler.is_root_enabled(CHILD_ID) == (False, "")
