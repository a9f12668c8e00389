"""Git-backed file store with staged, atomically committed transactions."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, BinaryIO, Protocol, runtime_checkable

from ntnsync.exceptions import (
    FileTooLargeError,
    RemoteNotConfiguredError,
    StoreError,
    TransactionClosedError,
)
from ntnsync.services.git_service import GitService

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ntnsync.config import Settings

logger = logging.getLogger(__name__)

DIR_MODE = 0o750
FILE_MODE = 0o600

_STREAM_CHUNK = 64 * 1024
_SPOOL_MAX_MEMORY = 1024 * 1024


@dataclass(frozen=True)
class FileInfo:
    """Directory entry returned by ``list``."""

    path: str
    is_dir: bool
    size: int
    mod_time: datetime | None = None

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def normalize_path(path: str) -> str:
    """Return a clean relative POSIX path, rejecting absolute paths and traversal."""
    candidate = PurePosixPath(path.replace("\\", "/").lstrip("/"))
    if any(part == ".." for part in candidate.parts):
        msg = f"Path escapes the store root: {path}"
        raise StoreError(msg)
    text = str(candidate)
    return "" if text == "." else text


@runtime_checkable
class ReadableStore(Protocol):
    """Read side shared by stores and transactions."""

    def read(self, path: str) -> bytes: ...

    def exists(self, path: str) -> bool: ...

    def list(self, directory: str) -> list[FileInfo]: ...


@runtime_checkable
class Transaction(ReadableStore, Protocol):
    """Staged mutations committed as one git commit."""

    def write(self, path: str, content: bytes | str) -> None: ...

    def write_stream(self, path: str, reader: BinaryIO, limit: int = 0) -> int: ...

    def delete(self, path: str) -> None: ...

    def mkdir(self, path: str) -> None: ...

    def apply(self) -> list[str]: ...

    def commit(self, message: str) -> str | None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class Store(ReadableStore, Protocol):
    """A transactional store: direct reads, staged writes, remote sync."""

    settings: Settings | None

    def walk_files(self, directory: str = "") -> list[str]: ...

    def begin(self) -> Transaction: ...

    def remote_enabled(self) -> bool: ...

    def pull(self) -> None: ...

    def push(self) -> None: ...

    def test_connection(self) -> None: ...


@dataclass
class _StagedOp:
    kind: str  # "write" | "delete" | "mkdir"
    path: str
    content: bytes | None = None
    spool: tempfile.SpooledTemporaryFile[bytes] | None = None

    def close(self) -> None:
        if self.spool is not None:
            self.spool.close()
            self.spool = None

    def data(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.spool is None:
            return b""
        self.spool.seek(0)
        return self.spool.read()


class LocalTransaction:
    """In-memory list of staged operations against one :class:`LocalStore`.

    Reads through the transaction see staged operations layered over the
    working tree. ``apply`` flushes the staged operations to disk without a
    commit; ``commit`` applies and then records one git commit if anything
    changed. ``rollback`` discards staged operations and closes the
    transaction.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._ops: list[_StagedOp] = []
        self._mutex = threading.Lock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            msg = "transaction already closed"
            raise TransactionClosedError(msg)

    @property
    def pending(self) -> int:
        return len(self._ops)

    # ── Staging ──────────────────────────────────────

    def write(self, path: str, content: bytes | str) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        with self._mutex:
            self._check_open()
            self._ops.append(_StagedOp("write", normalize_path(path), content=content))

    def write_stream(self, path: str, reader: BinaryIO, limit: int = 0) -> int:
        """Stage the contents of *reader*; returns the number of bytes staged.

        Raises FileTooLargeError (staging nothing) when *limit* > 0 is exceeded.
        """
        spool: tempfile.SpooledTemporaryFile[bytes] = tempfile.SpooledTemporaryFile(
            max_size=_SPOOL_MAX_MEMORY
        )
        written = 0
        try:
            while chunk := reader.read(_STREAM_CHUNK):
                written += len(chunk)
                if limit and written > limit:
                    raise FileTooLargeError(written, limit)
                spool.write(chunk)
        except BaseException:
            spool.close()
            raise
        with self._mutex:
            if self._closed:
                spool.close()
                self._check_open()
            self._ops.append(_StagedOp("write", normalize_path(path), spool=spool))
        return written

    def delete(self, path: str) -> None:
        with self._mutex:
            self._check_open()
            self._ops.append(_StagedOp("delete", normalize_path(path)))

    def mkdir(self, path: str) -> None:
        with self._mutex:
            self._check_open()
            self._ops.append(_StagedOp("mkdir", normalize_path(path)))

    # ── Overlay reads ────────────────────────────────

    def _last_op(self, path: str) -> _StagedOp | None:
        for op in reversed(self._ops):
            if op.path == path or (op.kind == "delete" and path.startswith(op.path + "/")):
                return op
        return None

    def read(self, path: str) -> bytes:
        norm = normalize_path(path)
        with self._mutex:
            op = self._last_op(norm)
            if op is not None:
                if op.kind == "write":
                    return op.data()
                raise FileNotFoundError(norm)
        return self._store.read(norm)

    def exists(self, path: str) -> bool:
        norm = normalize_path(path)
        with self._mutex:
            op = self._last_op(norm)
            if op is not None:
                return op.kind != "delete"
            for staged in self._ops:
                if staged.kind != "delete" and staged.path.startswith(norm + "/"):
                    return True
        return self._store.exists(norm)

    def list(self, directory: str) -> list[FileInfo]:
        norm = normalize_path(directory)
        entries = {info.path: info for info in self._store.list(norm)}
        prefix = f"{norm}/" if norm else ""
        with self._mutex:
            for op in self._ops:
                if op.kind == "delete" and norm and (norm + "/").startswith(op.path + "/"):
                    # The directory itself or an ancestor is gone
                    entries.clear()
                    continue
                if not op.path.startswith(prefix) or op.path == norm:
                    continue
                rest = op.path[len(prefix) :]
                child = prefix + rest.split("/", 1)[0]
                if op.kind == "delete":
                    if child == op.path:
                        entries.pop(child, None)
                elif "/" in rest or op.kind == "mkdir":
                    entries.setdefault(child, FileInfo(path=child, is_dir=True, size=0))
                else:
                    entries[child] = FileInfo(path=child, is_dir=False, size=len(op.data()))
        return sorted(entries.values(), key=lambda info: info.path)

    # ── Completion ───────────────────────────────────

    def apply(self) -> list[str]:
        """Write every staged operation to the working tree and clear the stage."""
        with self._mutex:
            self._check_open()
            ops, self._ops = self._ops, []
        try:
            return self._store._apply(ops)
        finally:
            for op in ops:
                op.close()

    def commit(self, message: str) -> str | None:
        """Apply staged operations and commit. Returns the commit hash or None if unchanged."""
        self.apply()
        return self._store._commit(message)

    def rollback(self) -> None:
        with self._mutex:
            if self._closed:
                return
            for op in self._ops:
                op.close()
            logger.debug("Rolled back %d staged operation(s)", len(self._ops))
            self._ops = []
            self._closed = True


class LocalStore:
    """A git repository used as a file store.

    ``read``/``exists``/``list`` access the working tree directly under the
    shared read lock. Transactions take the exclusive write lock while
    applying and committing.
    """

    def __init__(self, root: Path, settings: Settings | None = None) -> None:
        self.root = root
        self.settings = settings
        self._lock = ReadWriteLock()
        self.git = GitService(
            root,
            branch=settings.git_branch if settings else "main",
            author_name=settings.git_user if settings else "ntnsync",
            author_email=settings.git_email if settings else "ntnsync@local",
            remote_url=settings.git_url if settings and settings.remote_enabled() else "",
            password=settings.git_pass if settings else "",
        )
        self._initialize()

    def _initialize(self) -> None:
        """Clone, open or create the repository according to the remote configuration."""
        try:
            if self.remote_enabled() and not self.root.exists():
                self.git.clone()
                return
            self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            if not self.git.is_repo():
                self.git.init_repo()
            if self.remote_enabled():
                self.git.ensure_remote()
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            logger.error(
                "Failed to initialize git repo in %s: %s. "
                "Ensure 'git' is installed and the store directory is writable.",
                self.root,
                exc,
            )
            raise

    def _full_path(self, path: str) -> Path:
        return self.root / normalize_path(path)

    # ── Reads ────────────────────────────────────────

    def read(self, path: str) -> bytes:
        """Return file contents; raises FileNotFoundError when missing."""
        with self._lock.read():
            return self._full_path(path).read_bytes()

    def exists(self, path: str) -> bool:
        with self._lock.read():
            return self._full_path(path).exists()

    def list(self, directory: str) -> list[FileInfo]:
        """List direct entries of *directory*; a missing directory yields []."""
        norm = normalize_path(directory)
        with self._lock.read():
            full = self._full_path(norm)
            if not full.is_dir():
                return []
            infos: list[FileInfo] = []
            for entry in sorted(full.iterdir()):
                if entry.name == ".git":
                    continue
                try:
                    stat = entry.stat()
                except FileNotFoundError:
                    continue
                rel = f"{norm}/{entry.name}" if norm else entry.name
                infos.append(
                    FileInfo(
                        path=rel,
                        is_dir=entry.is_dir(),
                        size=stat.st_size,
                        mod_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
            return infos

    def walk_files(self, directory: str = "") -> list[str]:
        """Return every file path below *directory*, skipping the .git directory."""
        norm = normalize_path(directory)
        with self._lock.read():
            base = self._full_path(norm)
            if not base.is_dir():
                return []
            result: list[str] = []
            for dirpath, dirnames, filenames in os.walk(base):
                dirnames[:] = sorted(d for d in dirnames if d != ".git")
                rel_dir = Path(dirpath).relative_to(self.root).as_posix()
                for filename in sorted(filenames):
                    result.append(filename if rel_dir == "." else f"{rel_dir}/{filename}")
            return result

    # ── Writes ───────────────────────────────────────

    def begin(self) -> LocalTransaction:
        return LocalTransaction(self)

    def _write_atomic(self, full: Path, data: bytes) -> None:
        full.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=full.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, full)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _apply(self, ops: list[_StagedOp]) -> list[str]:
        touched: list[str] = []
        with self._lock.write():
            for op in ops:
                full = self._full_path(op.path)
                if op.kind == "write":
                    self._write_atomic(full, op.data())
                elif op.kind == "delete":
                    if full.is_dir():
                        shutil.rmtree(full)
                    else:
                        full.unlink(missing_ok=True)
                elif op.kind == "mkdir":
                    full.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
                touched.append(op.path)
        if touched:
            logger.debug("Applied %d staged operation(s) to %s", len(touched), self.root)
        return touched

    def _commit(self, message: str) -> str | None:
        with self._lock.write():
            commit_hash = self.git.commit_all(message)
        if commit_hash is None:
            logger.debug("Nothing to commit in %s", self.root)
        else:
            logger.info("Committed %s: %s", commit_hash[:7], message)
        return commit_hash

    # ── Remote ───────────────────────────────────────

    def remote_enabled(self) -> bool:
        return self.settings is not None and self.settings.remote_enabled()

    def pull(self) -> None:
        if not self.remote_enabled():
            return
        with self._lock.write():
            self.git.pull()

    def push(self) -> None:
        if not self.remote_enabled():
            return
        with self._lock.write():
            self.git.push()

    def test_connection(self) -> None:
        if not self.remote_enabled():
            raise RemoteNotConfiguredError
        self.git.ls_remote()
