"""Tests for page, file and user registries and the sync state."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from ntnsync.exceptions import StoreError
from ntnsync.filesystem.store import LocalStore
from ntnsync.schemas.notion import User
from ntnsync.schemas.registry import FileRegistry, PageRegistry, SyncState
from ntnsync.services.registry_service import (
    IDS_DIR,
    STATE_PATH,
    RegistryService,
    legacy_page_registry_path,
    page_registry_path,
)
from tests.conftest import FakeNotionClient, page_id


@pytest.fixture
def registry(store: LocalStore, notion: FakeNotionClient) -> RegistryService:
    return RegistryService(store, store.begin(), client=notion)  # type: ignore[arg-type]


class TestPageRegistry:
    def test_save_and_find(self, registry: RegistryService) -> None:
        registry.save_page(PageRegistry(id=page_id(1), folder="docs", file_path="docs/a.md"))
        found = registry.find_page_by_id(page_id(1))
        assert found is not None
        assert found.file_path == "docs/a.md"

    def test_lookup_accepts_dashed_ids(self, registry: RegistryService) -> None:
        registry.save_page(PageRegistry(id="1" * 32, folder="docs"))
        assert registry.find_page_by_id("11111111-1111-1111-1111-111111111111") is not None

    def test_missing_returns_none(self, registry: RegistryService) -> None:
        assert registry.find_page_by_id(page_id(404)) is None

    def test_legacy_path_fallback_and_migration(self, registry: RegistryService) -> None:
        legacy = PageRegistry(id=page_id(2), folder="docs", title="Old")
        tx = registry.tx
        assert tx is not None
        tx.write(legacy_page_registry_path(page_id(2)), legacy.model_dump_json())
        found = registry.find_page_by_id(page_id(2))
        assert found is not None
        assert found.title == "Old"

        registry.save_page(found)
        assert registry.tx.exists(page_registry_path(page_id(2)))  # type: ignore[union-attr]
        assert not registry.tx.exists(legacy_page_registry_path(page_id(2)))  # type: ignore[union-attr]

    def test_corrupt_registry_is_ignored(self, registry: RegistryService) -> None:
        registry.tx.write(page_registry_path(page_id(3)), "{broken")  # type: ignore[union-attr]
        assert registry.find_page_by_id(page_id(3)) is None
        assert registry.list_page_registries() == []

    def test_corrupt_record_falls_back_to_legacy_path(self, registry: RegistryService) -> None:
        legacy = PageRegistry(id=page_id(4), folder="docs", title="Legacy")
        tx = registry.tx
        assert tx is not None
        tx.write(page_registry_path(page_id(4)), "{broken")
        tx.write(legacy_page_registry_path(page_id(4)), legacy.model_dump_json())
        found = registry.find_page_by_id(page_id(4))
        assert found is not None
        assert found.title == "Legacy"

    def test_list_only_page_records(self, registry: RegistryService) -> None:
        registry.save_page(PageRegistry(id=page_id(1)))
        registry.save_file(FileRegistry(id="abc", file_path="docs/a/files/x.png"))
        registry.tx.write(f"{IDS_DIR}/user-{page_id(9)}.json", "{}")  # type: ignore[union-attr]
        assert [r.id for r in registry.list_page_registries()] == [page_id(1)]

    def test_delete(self, registry: RegistryService) -> None:
        registry.save_page(PageRegistry(id=page_id(1)))
        registry.delete_page(page_id(1))
        assert registry.find_page_by_id(page_id(1)) is None

    def test_write_requires_transaction(self, store: LocalStore) -> None:
        with pytest.raises(StoreError):
            RegistryService(store).save_page(PageRegistry(id=page_id(1)))

    def test_children_are_normalized_and_deduplicated(self) -> None:
        dashed = "11111111-1111-1111-1111-111111111111"
        record = PageRegistry(id=page_id(5), children=[dashed, "1" * 32, ""])
        assert record.children == ["1" * 32]


class TestFileRegistry:
    def test_round_trip(self, registry: RegistryService) -> None:
        now = datetime(2026, 3, 1, tzinfo=UTC)
        registry.save_file(
            FileRegistry(id="f1", file_path="docs/p/files/a.png", source_url="u", last_synced=now)
        )
        found = registry.find_file_by_id("f1")
        assert found is not None
        assert found.last_synced == now

    def test_delete_file(self, registry: RegistryService) -> None:
        registry.save_file(FileRegistry(id="f1", file_path="x"))
        registry.delete_file("f1")
        assert registry.find_file_by_id("f1") is None


class TestResolveUser:
    async def test_fetches_and_caches(
        self, registry: RegistryService, notion: FakeNotionClient
    ) -> None:
        user_id = page_id(77)
        notion.users[user_id] = User(id=user_id, name="Ada", type="person")
        first = User(id=user_id)
        await registry.resolve_user(first)
        assert first.name == "Ada"
        assert registry.find_user_by_id(user_id) is not None

        del notion.users[user_id]
        second = User(id=user_id)
        await registry.resolve_user(second)
        assert second.name == "Ada"

    async def test_lookup_failure_leaves_user_unresolved(self, registry: RegistryService) -> None:
        user = User(id=page_id(78))
        await registry.resolve_user(user)
        assert user.name == ""
        assert user.format() == f"Unknown [{page_id(78)[:8]}]"


class TestSyncState:
    def test_missing_state_is_empty(self, registry: RegistryService) -> None:
        state = registry.load_state()
        assert state.folders == []
        assert state.last_pull_time is None

    def test_save_and_load(self, registry: RegistryService) -> None:
        state = SyncState()
        state.add_folder("notes")
        state.add_folder("docs")
        state.last_pull_time = datetime(2026, 3, 1, tzinfo=UTC)
        registry.save_state(state)
        loaded = registry.load_state()
        assert loaded.folders == ["docs", "notes"]
        assert loaded.last_pull_time == state.last_pull_time
        assert registry.tx.exists(STATE_PATH)  # type: ignore[union-attr]

    def test_add_folder_reports_new(self) -> None:
        state = SyncState()
        assert state.add_folder("docs")
        assert not state.add_folder("docs")
        assert not state.add_folder("")
