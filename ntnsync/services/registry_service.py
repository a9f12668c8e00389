"""Page, file and user registries plus the global sync state.

All records are JSON files under ``.notion-sync``. Writes go through the
active transaction; reads go through it too when one is attached, so a
registry saved earlier in a run is visible before the run commits.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ntnsync.exceptions import NotionAPIError, StoreError
from ntnsync.schemas.notion import Person, User, normalize_page_id
from ntnsync.schemas.registry import (
    FileRegistry,
    PageRegistry,
    SyncState,
    UserRegistry,
)
from ntnsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from ntnsync.filesystem.store import ReadableStore, Store, Transaction
    from ntnsync.services.notion_client import NotionClient

logger = logging.getLogger(__name__)

STATE_DIR = ".notion-sync"
IDS_DIR = f"{STATE_DIR}/ids"
STATE_PATH = f"{STATE_DIR}/state.json"

_M = TypeVar("_M", bound=BaseModel)


def page_registry_path(page_id: str) -> str:
    return f"{IDS_DIR}/page-{normalize_page_id(page_id)}.json"


def legacy_page_registry_path(page_id: str) -> str:
    return f"{IDS_DIR}/{normalize_page_id(page_id)}.json"


def file_registry_path(file_id: str) -> str:
    return f"{IDS_DIR}/file-{file_id}.json"


def user_registry_path(user_id: str) -> str:
    return f"{IDS_DIR}/user-{normalize_page_id(user_id)}.json"


def _dump(record: BaseModel) -> bytes:
    return record.model_dump_json(indent=2).encode("utf-8")


class RegistryService:
    """Load and save registries for one store, optionally through a transaction."""

    def __init__(
        self,
        store: Store,
        tx: Transaction | None = None,
        client: NotionClient | None = None,
    ) -> None:
        self.store = store
        self.tx = tx
        self.client = client

    def set_transaction(self, tx: Transaction | None) -> None:
        self.tx = tx

    @property
    def _reader(self) -> ReadableStore:
        return self.tx if self.tx is not None else self.store

    def _write(self, path: str, record: BaseModel) -> None:
        if self.tx is None:
            msg = "registry write requires an active transaction"
            raise StoreError(msg)
        self.tx.write(path, _dump(record))

    def _load(self, model: type[_M], *paths: str) -> _M | None:
        for path in paths:
            try:
                data = self._reader.read(path)
            except FileNotFoundError:
                continue
            try:
                return model.model_validate_json(data)
            except ValidationError as exc:
                logger.warning("Ignoring corrupt registry %s: %s", path, exc)
                continue
        return None

    # ── Pages ────────────────────────────────────────

    def find_page_by_id(self, page_id: str) -> PageRegistry | None:
        """Return the page registry, falling back to the legacy path; None when absent."""
        return self._load(
            PageRegistry, page_registry_path(page_id), legacy_page_registry_path(page_id)
        )

    def save_page(self, registry: PageRegistry) -> None:
        self._write(page_registry_path(registry.id), registry)
        legacy = legacy_page_registry_path(registry.id)
        if self.tx is not None and self.tx.exists(legacy):
            self.tx.delete(legacy)

    def delete_page(self, page_id: str) -> None:
        if self.tx is None:
            msg = "registry delete requires an active transaction"
            raise StoreError(msg)
        for path in (page_registry_path(page_id), legacy_page_registry_path(page_id)):
            if self._reader.exists(path):
                self.tx.delete(path)

    def list_page_registries(self) -> list[PageRegistry]:
        """Return every readable page registry; corrupt records are skipped."""
        registries: list[PageRegistry] = []
        for info in self._reader.list(IDS_DIR):
            if info.is_dir or not info.name.endswith(".json"):
                continue
            if not info.name.startswith("page-"):
                continue
            try:
                registries.append(PageRegistry.model_validate_json(self._reader.read(info.path)))
            except (FileNotFoundError, ValidationError):
                logger.debug("Skipping unreadable registry %s", info.path)
        return registries

    # ── Files ────────────────────────────────────────

    def find_file_by_id(self, file_id: str) -> FileRegistry | None:
        return self._load(FileRegistry, file_registry_path(file_id))

    def save_file(self, registry: FileRegistry) -> None:
        self._write(file_registry_path(registry.id), registry)

    def delete_file(self, file_id: str) -> None:
        path = file_registry_path(file_id)
        if self.tx is not None and self._reader.exists(path):
            self.tx.delete(path)

    # ── Users ────────────────────────────────────────

    def find_user_by_id(self, user_id: str) -> UserRegistry | None:
        return self._load(UserRegistry, user_registry_path(user_id))

    def save_user(self, registry: UserRegistry) -> None:
        self._write(user_registry_path(registry.id), registry)

    async def resolve_user(self, user: User) -> None:
        """Fill in name, type and email of *user* in place.

        The user cache is consulted first; on a miss the user is fetched from
        Notion and cached. Lookup failures leave the user unresolved.
        """
        if not user.id or user.name:
            return
        cached = self.find_user_by_id(user.id)
        if cached is not None:
            user.name = cached.name
            user.type = cached.type
            if cached.email:
                user.person = Person(email=cached.email)
            return
        if self.client is None:
            return
        try:
            fetched = await self.client.get_user(user.id)
        except (NotionAPIError, httpx.HTTPError) as exc:
            logger.debug("Failed to fetch user %s: %s", user.id, exc)
            return
        user.name = fetched.name
        user.type = fetched.type
        user.person = fetched.person
        email = fetched.person.email if fetched.person else ""
        if self.tx is not None:
            self.save_user(
                UserRegistry(
                    id=fetched.id or user.id,
                    name=fetched.name,
                    type=fetched.type,
                    email=email,
                    last_fetched=now_utc(),
                )
            )

    # ── State ────────────────────────────────────────

    def load_state(self) -> SyncState:
        """Return the sync state; a missing or unreadable file yields an empty state."""
        return self._load(SyncState, STATE_PATH) or SyncState()

    def save_state(self, state: SyncState) -> None:
        self._write(STATE_PATH, state)
