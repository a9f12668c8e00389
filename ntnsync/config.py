"""Application configuration loaded from environment variables."""

from __future__ import annotations

import re
from datetime import timedelta
from enum import StrEnum
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ntnsync.services.datetime_service import parse_duration

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_COMMIT_PERIOD = timedelta(minutes=1)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(GB|MB|KB|B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 * 1024, "GB": 1024 * 1024 * 1024}


class StorageMode(StrEnum):
    AUTO = ""
    LOCAL = "local"
    REMOTE = "remote"


def parse_file_size(value: str | int | None, default: int = DEFAULT_MAX_FILE_SIZE) -> int:
    """Parse a size such as ``5MB``, ``512KB`` or a plain byte count.

    Empty, zero and unparseable values fall back to *default*.
    """
    if value is None:
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    match = _SIZE_RE.match(value)
    if match is None:
        return default
    size = int(float(match.group(1)) * _SIZE_UNITS[(match.group(2) or "B").upper()])
    return size if size > 0 else default


class Settings(BaseSettings):
    """ntnsync settings.

    Every field reads ``NTN_<FIELD>`` from the environment (or ``.env``), except
    the Notion token (``NOTION_TOKEN``) and the store path (``NTN_DIR``).
    """

    model_config = SettingsConfigDict(
        env_prefix="NTN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Notion
    notion_token: str = Field(
        default="", validation_alias=AliasChoices("NOTION_TOKEN", "notion_token")
    )

    # Local store
    store_path: Path = Field(
        default=Path("notion"), validation_alias=AliasChoices("NTN_DIR", "store_path")
    )

    # Sync tuning
    block_depth: int = Field(default=0, ge=0)
    queue_delay: timedelta = timedelta(0)
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)

    # Remote git
    storage: StorageMode = StorageMode.AUTO
    git_url: str = ""
    git_pass: str = ""
    git_branch: str = "main"
    git_user: str = "ntnsync"
    git_email: str = "ntnsync@local"
    metadata_branch: str = ""
    commit: bool | None = None
    commit_period: timedelta | None = None
    push: bool | None = None

    # Webhook server
    webhook_port: int = Field(default=8080, ge=1, le=65535)
    webhook_path: str = "/webhooks/notion"
    webhook_secret: str = ""
    webhook_auto_sync: bool = True
    webhook_sync_delay: timedelta = timedelta(0)

    # Logging
    log_format: str = "text"

    @field_validator("queue_delay", "webhook_sync_delay", mode="before")
    @classmethod
    def _parse_delay(cls, value: object) -> timedelta:
        if isinstance(value, (str, int, float, timedelta)) or value is None:
            return parse_duration(value)
        return value  # type: ignore[return-value]

    @field_validator("commit_period", mode="before")
    @classmethod
    def _parse_commit_period(cls, value: object) -> timedelta | None:
        if value is None or value == "":
            return None
        if isinstance(value, (str, int, float, timedelta)):
            return parse_duration(value)
        return value  # type: ignore[return-value]

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_max_file_size(cls, value: object) -> int:
        if isinstance(value, (str, int)) or value is None:
            return parse_file_size(value)
        return value  # type: ignore[return-value]

    @field_validator("storage", mode="before")
    @classmethod
    def _lower_storage(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value

    def effective_storage_mode(self) -> StorageMode:
        """Explicit local/remote wins; otherwise remote iff a git URL is set."""
        if self.storage in (StorageMode.LOCAL, StorageMode.REMOTE):
            return self.storage
        return StorageMode.REMOTE if self.git_url else StorageMode.LOCAL

    def remote_enabled(self) -> bool:
        return bool(self.git_url) and self.storage != StorageMode.LOCAL

    def is_ssh_url(self) -> bool:
        return self.git_url.startswith(("git@", "ssh://"))

    def _commit_policy(self) -> tuple[bool, timedelta]:
        period = timedelta(0)
        enabled = False
        if self.commit_period is not None and self.commit_period > timedelta(0):
            period = self.commit_period
            enabled = True
        elif self.git_url:
            period = DEFAULT_COMMIT_PERIOD

        if self.commit is not None:
            enabled = self.commit
            if enabled and period == timedelta(0) and self.git_url:
                period = DEFAULT_COMMIT_PERIOD
        elif period > timedelta(0):
            enabled = True

        if not enabled:
            period = timedelta(0)
        return enabled, period

    def commit_enabled(self) -> bool:
        return self._commit_policy()[0]

    def effective_commit_period(self) -> timedelta:
        """Interval between periodic commits during a sync, zero when disabled."""
        return self._commit_policy()[1]

    def push_enabled(self) -> bool:
        if self.push is not None:
            return self.push
        return bool(self.git_url)
