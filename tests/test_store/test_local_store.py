"""Tests for the git-backed local store and its transactions."""

from __future__ import annotations

import io
import subprocess
from typing import TYPE_CHECKING

import pytest

from ntnsync.exceptions import FileTooLargeError, StoreError, TransactionClosedError
from ntnsync.filesystem.store import LocalStore, normalize_path

if TYPE_CHECKING:
    from pathlib import Path


def _commit_count(root: Path) -> int:
    result = subprocess.run(
        ["git", "rev-list", "--count", "HEAD"],
        cwd=root,
        capture_output=True,
        text=True,
        check=False,
    )
    return int(result.stdout.strip() or 0) if result.returncode == 0 else 0


class TestNormalizePath:
    def test_strips_leading_slash(self) -> None:
        assert normalize_path("/docs/page.md") == "docs/page.md"

    def test_backslashes_become_slashes(self) -> None:
        assert normalize_path("docs\\page.md") == "docs/page.md"

    def test_root_is_empty(self) -> None:
        assert normalize_path(".") == ""
        assert normalize_path("") == ""

    def test_rejects_traversal(self) -> None:
        with pytest.raises(StoreError):
            normalize_path("docs/../../etc/passwd")


class TestLocalStoreInit:
    def test_creates_git_repo(self, store: LocalStore) -> None:
        assert (store.root / ".git").is_dir()

    def test_reopening_keeps_files(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "hello")
        tx.commit("add a")
        reopened = LocalStore(store.root, store.settings)
        assert reopened.read("docs/a.md") == b"hello"

    def test_missing_file_raises(self, store: LocalStore) -> None:
        with pytest.raises(FileNotFoundError):
            store.read("nope.md")

    def test_list_missing_directory_is_empty(self, store: LocalStore) -> None:
        assert store.list("missing") == []


class TestTransactionOverlay:
    def test_staged_write_visible_before_apply(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "draft")
        assert tx.read("docs/a.md") == b"draft"
        assert tx.exists("docs/a.md")
        assert tx.exists("docs")
        assert not store.exists("docs/a.md")

    def test_staged_delete_hides_file(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "v1")
        tx.apply()
        tx.delete("docs/a.md")
        assert not tx.exists("docs/a.md")
        with pytest.raises(FileNotFoundError):
            tx.read("docs/a.md")
        assert store.exists("docs/a.md")

    def test_deleting_directory_hides_children(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/sub/a.md", "v1")
        tx.apply()
        tx.delete("docs/sub")
        assert not tx.exists("docs/sub/a.md")

    def test_list_merges_staged_entries(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "a")
        tx.apply()
        tx.write("docs/b.md", "bb")
        tx.write("docs/sub/c.md", "c")
        tx.delete("docs/a.md")
        entries = {info.name: info for info in tx.list("docs")}
        assert sorted(entries) == ["b.md", "sub"]
        assert entries["b.md"].size == 2
        assert entries["sub"].is_dir

    def test_list_under_deleted_ancestor_is_empty(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/sub/c.md", "c")
        tx.apply()
        tx.delete("docs")
        assert tx.list("docs/sub") == []
        assert tx.list("docs") == []
        assert not tx.exists("docs/sub/c.md")

        tx.write("docs/sub/d.md", "d")
        assert [info.name for info in tx.list("docs/sub")] == ["d.md"]

    def test_last_write_wins(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "one")
        tx.write("a.md", "two")
        tx.apply()
        assert store.read("a.md") == b"two"


class TestTransactionCompletion:
    def test_apply_writes_without_commit(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "x")
        assert tx.apply() == ["a.md"]
        assert store.read("a.md") == b"x"
        assert _commit_count(store.root) == 0

    def test_commit_returns_hash(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "x")
        commit_hash = tx.commit("add a")
        assert commit_hash is not None
        assert len(commit_hash) == 40
        assert _commit_count(store.root) == 1

    def test_commit_without_changes_returns_none(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "x")
        tx.commit("first")
        tx.write("a.md", "x")
        assert tx.commit("same content") is None
        assert _commit_count(store.root) == 1

    def test_transaction_stays_open_after_commit(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "1")
        tx.commit("one")
        tx.write("b.md", "2")
        assert tx.commit("two") is not None
        assert _commit_count(store.root) == 2

    def test_rollback_discards_and_closes(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("a.md", "x")
        tx.rollback()
        assert not store.exists("a.md")
        with pytest.raises(TransactionClosedError):
            tx.write("b.md", "y")
        with pytest.raises(TransactionClosedError):
            tx.apply()

    def test_rollback_twice_is_harmless(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.rollback()
        tx.rollback()

    def test_written_files_are_private(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "x")
        tx.apply()
        assert (store.root / "docs" / "a.md").stat().st_mode & 0o777 == 0o600


class TestWriteStream:
    def test_streams_content(self, store: LocalStore) -> None:
        tx = store.begin()
        size = tx.write_stream("files/blob.bin", io.BytesIO(b"\x00" * 2048))
        assert size == 2048
        tx.apply()
        assert store.read("files/blob.bin") == b"\x00" * 2048

    def test_limit_exceeded_stages_nothing(self, store: LocalStore) -> None:
        tx = store.begin()
        with pytest.raises(FileTooLargeError):
            tx.write_stream("files/big.bin", io.BytesIO(b"x" * 100), limit=10)
        assert not tx.exists("files/big.bin")


class TestWalkFiles:
    def test_skips_git_directory(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "a")
        tx.write(".notion-sync/state.json", "{}")
        tx.commit("seed")
        files = store.walk_files()
        assert "docs/a.md" in files
        assert ".notion-sync/state.json" in files
        assert not any(path.startswith(".git/") for path in files)

    def test_subdirectory(self, store: LocalStore) -> None:
        tx = store.begin()
        tx.write("docs/a.md", "a")
        tx.write("other/b.md", "b")
        tx.apply()
        assert store.walk_files("docs") == ["docs/a.md"]


class TestRemote:
    def test_remote_disabled_without_url(self, store: LocalStore) -> None:
        assert not store.remote_enabled()
        store.pull()
        store.push()

    def test_push_to_bare_remote(self, tmp_path: Path) -> None:
        from tests.conftest import make_settings

        remote = tmp_path / "remote.git"
        subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
        settings = make_settings(tmp_path, git_url=str(remote))
        store = LocalStore(settings.store_path, settings)
        tx = store.begin()
        tx.write("docs/a.md", "pushed")
        tx.commit("add a")
        store.push()

        store.test_connection()
        heads = subprocess.run(
            ["git", "ls-remote", "--heads", str(remote)],
            capture_output=True,
            text=True,
            check=True,
        )
        assert "refs/heads/main" in heads.stdout
