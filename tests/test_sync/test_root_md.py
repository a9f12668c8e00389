"""Tests for root.md parsing, reconciliation and add."""

from __future__ import annotations

import pytest

from ntnsync.exceptions import InvalidFolderNameError, InvalidPageIdError, NtnsyncError
from ntnsync.filesystem.store import LocalStore
from ntnsync.services.crawler import Crawler
from ntnsync.services.root_service import (
    ROOT_MD,
    ROOT_MD_TEMPLATE,
    RootEntry,
    add_root,
    enabled_root_ids,
    format_root_md,
    parse_root_md,
    reconcile_root_md,
)
from tests.conftest import (
    CHILD_ID,
    ROOT_ID,
    FakeNotionClient,
    page_id,
    root_line,
    write_root_md,
)


class TestParse:
    def test_enabled_and_disabled_entries(self) -> None:
        content = "\n".join(
            [
                "# Root Pages",
                "",
                root_line(ROOT_ID, "docs"),
                root_line(CHILD_ID, "wiki", enabled=False),
                "- [X] **notes**: " + page_id(3),
            ]
        )
        entries = parse_root_md(content)
        assert [(e.folder, e.enabled, e.page_id) for e in entries] == [
            ("docs", True, ROOT_ID),
            ("wiki", False, CHILD_ID),
            ("notes", True, page_id(3)),
        ]

    def test_other_lines_ignored(self) -> None:
        content = "Some intro\n- plain bullet\n- [x] **docs**: not-a-page\n"
        assert parse_root_md(content) == []

    def test_format_round_trips(self) -> None:
        entry = RootEntry(folder="docs", enabled=False, url="https://x/" + ROOT_ID, page_id=ROOT_ID)
        content = format_root_md([entry])
        assert content.startswith(ROOT_MD_TEMPLATE)
        assert parse_root_md(content) == [entry]


class TestReconcile:
    def test_creates_template_when_missing(self, crawler: Crawler, store: LocalStore) -> None:
        assert reconcile_root_md(crawler) == 0
        assert store.read(ROOT_MD).decode() == ROOT_MD_TEMPLATE

    def test_creates_root_registries_and_queues_them(
        self, crawler: Crawler, store: LocalStore
    ) -> None:
        write_root_md(store, root_line(ROOT_ID), root_line(CHILD_ID, "wiki", enabled=False))
        assert reconcile_root_md(crawler) == 1

        root = crawler.registry.find_page_by_id(ROOT_ID)
        disabled = crawler.registry.find_page_by_id(CHILD_ID)
        assert root is not None
        assert disabled is not None
        assert root.is_root
        assert root.enabled
        assert not disabled.enabled
        assert [entry.page_ids for _, entry in crawler.queue.entries()] == [[ROOT_ID]]
        assert crawler.load_state().folders == ["docs", "wiki"]

    def test_second_run_does_not_requeue(self, crawler: Crawler, store: LocalStore) -> None:
        write_root_md(store, root_line(ROOT_ID))
        reconcile_root_md(crawler)
        assert reconcile_root_md(crawler) == 0
        assert len(crawler.queue.list()) == 1

    def test_duplicates_rewritten(self, crawler: Crawler, store: LocalStore) -> None:
        write_root_md(store, root_line(ROOT_ID), root_line(ROOT_ID, "other"))
        reconcile_root_md(crawler)
        entries = parse_root_md(store.read(ROOT_MD).decode())
        assert [entry.folder for entry in entries] == ["docs"]

    def test_invalid_folder_ignored(self, crawler: Crawler, store: LocalStore) -> None:
        write_root_md(store, root_line(ROOT_ID, "Bad_Folder"))
        assert reconcile_root_md(crawler) == 0
        assert crawler.registry.find_page_by_id(ROOT_ID) is None

    def test_toggle_updates_existing_registry(self, crawler: Crawler, store: LocalStore) -> None:
        write_root_md(store, root_line(ROOT_ID))
        reconcile_root_md(crawler)
        write_root_md(store, root_line(ROOT_ID, enabled=False))
        reconcile_root_md(crawler)
        registry = crawler.registry.find_page_by_id(ROOT_ID)
        assert registry is not None
        assert not registry.enabled
        assert enabled_root_ids(crawler) == set()


class TestAddRoot:
    async def test_appends_entry(
        self, crawler: Crawler, store: LocalStore, notion: FakeNotionClient
    ) -> None:
        notion.add_page(ROOT_ID, "Handbook")
        entry = await add_root(crawler, f"https://www.notion.so/Handbook-{ROOT_ID}", "docs")
        crawler.apply()
        assert entry.page_id == ROOT_ID
        content = store.read(ROOT_MD).decode()
        assert content.startswith(ROOT_MD_TEMPLATE)
        assert f"- [x] **docs**: https://www.notion.so/Handbook-{ROOT_ID}" in content
        assert crawler.queue.is_queued(ROOT_ID)

    async def test_bare_id_gets_url(
        self, crawler: Crawler, store: LocalStore, notion: FakeNotionClient
    ) -> None:
        notion.add_page(ROOT_ID, "Handbook")
        entry = await add_root(crawler, ROOT_ID, "docs", enabled=False)
        assert entry.url == f"https://www.notion.so/{ROOT_ID}"
        assert not crawler.queue.is_queued(ROOT_ID)

    async def test_database_root(self, crawler: Crawler, notion: FakeNotionClient) -> None:
        notion.add_database(page_id(7), "Tasks")
        entry = await add_root(crawler, page_id(7), "tasks")
        assert entry.folder == "tasks"

    async def test_duplicate_rejected(
        self, crawler: Crawler, store: LocalStore, notion: FakeNotionClient
    ) -> None:
        notion.add_page(ROOT_ID, "Handbook")
        write_root_md(store, root_line(ROOT_ID))
        with pytest.raises(NtnsyncError, match="already"):
            await add_root(crawler, ROOT_ID, "other")

    async def test_invalid_input(self, crawler: Crawler) -> None:
        with pytest.raises(InvalidPageIdError):
            await add_root(crawler, "nope", "docs")
        with pytest.raises(InvalidFolderNameError):
            await add_root(crawler, ROOT_ID, "Bad Folder")
