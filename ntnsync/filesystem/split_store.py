"""Store that keeps synchronized content and sync bookkeeping in separate repositories."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, BinaryIO

from ntnsync.filesystem.store import LocalStore

if TYPE_CHECKING:
    from pathlib import Path

    from ntnsync.config import Settings
    from ntnsync.filesystem.store import FileInfo, LocalTransaction

logger = logging.getLogger(__name__)

METADATA_PREFIX = ".notion-sync"
METADATA_COMMIT_PREFIX = "[metadata] "
METADATA_REPO_DIR = ".notion-sync-repo"


def is_metadata_path(path: str) -> bool:
    norm = path.lstrip("/")
    return norm == METADATA_PREFIX or norm.startswith(METADATA_PREFIX + "/")


class SplitTransaction:
    """Routes staged operations to the content or metadata transaction by path."""

    def __init__(self, content_tx: LocalTransaction, metadata_tx: LocalTransaction) -> None:
        self.content_tx = content_tx
        self.metadata_tx = metadata_tx

    def _tx_for(self, path: str) -> LocalTransaction:
        return self.metadata_tx if is_metadata_path(path) else self.content_tx

    @property
    def pending(self) -> int:
        return self.content_tx.pending + self.metadata_tx.pending

    def read(self, path: str) -> bytes:
        return self._tx_for(path).read(path)

    def exists(self, path: str) -> bool:
        return self._tx_for(path).exists(path)

    def list(self, directory: str) -> list[FileInfo]:
        return self._tx_for(directory).list(directory)

    def write(self, path: str, content: bytes | str) -> None:
        self._tx_for(path).write(path, content)

    def write_stream(self, path: str, reader: BinaryIO, limit: int = 0) -> int:
        return self._tx_for(path).write_stream(path, reader, limit)

    def delete(self, path: str) -> None:
        self._tx_for(path).delete(path)

    def mkdir(self, path: str) -> None:
        self._tx_for(path).mkdir(path)

    def apply(self) -> list[str]:
        return self.content_tx.apply() + self.metadata_tx.apply()

    def commit(self, message: str) -> str | None:
        """Commit content first, then bookkeeping; returns the content commit hash."""
        content_hash = self.content_tx.commit(message)
        metadata_hash = self.metadata_tx.commit(METADATA_COMMIT_PREFIX + message)
        return content_hash or metadata_hash

    def rollback(self) -> None:
        self.content_tx.rollback()
        self.metadata_tx.rollback()


class SplitStore:
    """Composes a content store and a metadata store under one logical namespace.

    Paths under ``.notion-sync`` live in the metadata store, everything else in
    the content store. Both stores keep the full path, so each repository has
    the same layout it would have as a single store.
    """

    def __init__(self, content: LocalStore, metadata: LocalStore) -> None:
        self.content = content
        self.metadata = metadata

    @property
    def settings(self) -> Settings | None:
        return self.content.settings

    def _store_for(self, path: str) -> LocalStore:
        return self.metadata if is_metadata_path(path) else self.content

    def read(self, path: str) -> bytes:
        return self._store_for(path).read(path)

    def exists(self, path: str) -> bool:
        return self._store_for(path).exists(path)

    def list(self, directory: str) -> list[FileInfo]:
        return self._store_for(directory).list(directory)

    def walk_files(self, directory: str = "") -> list[str]:
        if is_metadata_path(directory):
            return self.metadata.walk_files(directory)
        files = [
            path
            for path in self.content.walk_files(directory)
            if not path.startswith(METADATA_REPO_DIR + "/")
        ]
        if not directory:
            files.extend(self.metadata.walk_files(METADATA_PREFIX))
        return files

    def begin(self) -> SplitTransaction:
        return SplitTransaction(self.content.begin(), self.metadata.begin())

    def remote_enabled(self) -> bool:
        return self.content.remote_enabled()

    def pull(self) -> None:
        self.content.pull()
        self.metadata.pull()

    def push(self) -> None:
        self.content.push()
        self.metadata.push()

    def test_connection(self) -> None:
        self.content.test_connection()


def exclude_path(repo_root: Path, name: str) -> None:
    """Keep *name* out of the repository at *repo_root* via ``.git/info/exclude``."""
    exclude = repo_root / ".git" / "info" / "exclude"
    entry = f"/{name}/"
    lines = exclude.read_text(encoding="utf-8").splitlines() if exclude.exists() else []
    if entry in lines:
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    lines.append(entry)
    exclude.write_text("\n".join(lines) + "\n", encoding="utf-8")


def open_store(settings: Settings, path: Path | None = None) -> LocalStore | SplitStore:
    """Open the store at *path* (default ``settings.store_path``).

    With ``NTN_METADATA_BRANCH`` set, bookkeeping goes to a second repository
    under ``<path>/.notion-sync-repo`` tracking that branch.
    """
    root = path or settings.store_path
    content = LocalStore(root, settings)
    if not settings.metadata_branch:
        return content
    metadata_settings = settings.model_copy(update={"git_branch": settings.metadata_branch})
    exclude_path(root, METADATA_REPO_DIR)
    metadata = LocalStore(root / METADATA_REPO_DIR, metadata_settings)
    logger.info(
        "Metadata branch %s enabled at %s", settings.metadata_branch, root / METADATA_REPO_DIR
    )
    return SplitStore(content, metadata)
