"""Persisted bookkeeping records under ``.notion-sync/``."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ntnsync.schemas.notion import normalize_page_id
from ntnsync.version import VERSION

REGISTRY_SCHEMA_VERSION = 1
STATE_VERSION = 3


class PageRegistry(BaseModel):
    """Tracks one materialized page or database.

    ``file_path`` is assigned on first write and never changes afterwards,
    even when the title changes upstream.
    """

    ntnsync_version: str = VERSION
    schema_version: int = REGISTRY_SCHEMA_VERSION
    id: str
    type: str = "page"
    folder: str = ""
    file_path: str = ""
    title: str = ""
    last_edited: datetime | None = None
    last_synced: datetime | None = None
    is_root: bool = False
    enabled: bool = False
    parent_id: str = ""
    children: list[str] = Field(default_factory=list)
    content_hash: str = ""

    @field_validator("id", "parent_id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return normalize_page_id(value)

    @field_validator("children")
    @classmethod
    def _normalize_children(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for child in value:
            norm = normalize_page_id(child)
            if norm and norm not in seen:
                seen.append(norm)
        return seen


class FileRegistry(BaseModel):
    """Tracks one downloaded attachment so it is fetched only once."""

    ntnsync_version: str = VERSION
    id: str
    file_path: str
    source_url: str = ""
    last_synced: datetime | None = None


class FileManifest(BaseModel):
    """Sidecar ``<file>.meta.json`` written next to each downloaded attachment."""

    ntnsync_version: str = VERSION
    file_id: str
    parent_page_id: str = ""
    downloaded_at: datetime | None = None


class UserRegistry(BaseModel):
    id: str
    name: str = ""
    type: str = ""
    email: str = ""
    last_fetched: datetime | None = None


class SyncState(BaseModel):
    """Global sync state: known folders and the discovery cursor."""

    ntnsync_version: str = VERSION
    version: int = STATE_VERSION
    folders: list[str] = Field(default_factory=list)
    last_pull_time: datetime | None = None
    oldest_pull_result: datetime | None = None

    def add_folder(self, folder: str) -> bool:
        """Record *folder*; returns True when it was not known yet."""
        if not folder or folder in self.folders:
            return False
        self.folders.append(folder)
        self.folders.sort()
        return True
