"""Queue record format.

Two shapes exist on disk: the current one with ``pages`` (id plus the
last-edited time seen at discovery) and a legacy one with a bare
``pageIds`` list. Records are decoded from either and always written in the
current shape.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ntnsync.schemas.notion import normalize_page_id


class QueueType(StrEnum):
    INIT = "init"
    UPDATE = "update"


def _zero_time_to_none(value: Any) -> Any:
    # Records written without a timestamp carry the zero time
    if isinstance(value, str) and value.startswith("0001-01-01"):
        return None
    if isinstance(value, datetime) and value.year <= 1:
        return None
    return value or None


class QueuePage(BaseModel):
    id: str
    last_edited: datetime | None = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return normalize_page_id(value)

    @field_validator("last_edited", mode="before")
    @classmethod
    def _zero_last_edited(cls, value: Any) -> Any:
        return _zero_time_to_none(value)


class QueueEntry(BaseModel):
    """One persisted unit of pending work."""

    model_config = ConfigDict(populate_by_name=True)

    type: QueueType
    folder: str
    pages: list[QueuePage] = Field(default_factory=list)
    parent_id: str = Field(default="", alias="parentId")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("pages") and data.get("pageIds"):
            upgraded = {key: value for key, value in data.items() if key != "pageIds"}
            upgraded["pages"] = [{"id": page_id} for page_id in data["pageIds"]]
            return upgraded
        return data

    @field_validator("created_at", mode="before")
    @classmethod
    def _zero_created_at(cls, value: Any) -> Any:
        return _zero_time_to_none(value)

    @property
    def page_ids(self) -> list[str]:
        return [page.id for page in self.pages]

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> QueueEntry:
        return cls.model_validate_json(data)
