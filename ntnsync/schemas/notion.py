"""Notion API object models.

Only the fields the sync engine reads are modelled explicitly. Block payloads
vary by block type and are kept as plain dicts under the block's type key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

USER_SHORT_ID_LENGTH = 8
UNTITLED_TITLE = "Untitled"


def normalize_page_id(page_id: str) -> str:
    """Canonical id form: lowercase hex without dashes."""
    return page_id.replace("-", "").strip().lower()


class Annotations(BaseModel):
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    underline: bool = False
    code: bool = False
    color: str = "default"


class Person(BaseModel):
    email: str = ""


class User(BaseModel):
    """A user reference; often only ``id`` is set until resolved."""

    object: str = "user"
    id: str = ""
    type: str = ""
    name: str = ""
    avatar_url: str | None = None
    person: Person | None = None

    def format(self) -> str:
        """Display form ``Name <email> [abcd1234]`` used in front matter and mentions."""
        if not self.id and not self.name:
            return ""
        name = self.name or "Unknown"
        short_id = self.id[:USER_SHORT_ID_LENGTH]
        if self.type == "person" and self.person is not None and self.person.email:
            return f"{name} <{self.person.email}> [{short_id}]"
        return f"{name} [{short_id}]"


class Mention(BaseModel):
    type: str = ""
    user: User | None = None
    page: dict[str, Any] | None = None
    database: dict[str, Any] | None = None
    date: dict[str, Any] | None = None
    link_preview: dict[str, Any] | None = None


class RichText(BaseModel):
    type: str = "text"
    plain_text: str = ""
    href: str | None = None
    annotations: Annotations | None = None
    text: dict[str, Any] | None = None
    mention: Mention | None = None
    equation: dict[str, Any] | None = None


def plain_text(items: list[RichText]) -> str:
    return "".join(item.plain_text for item in items)


class Parent(BaseModel):
    type: str = ""
    page_id: str = ""
    database_id: str = ""
    data_source_id: str = ""
    block_id: str = ""
    workspace: bool = False
    space_id: str = ""

    @property
    def is_workspace_level(self) -> bool:
        return self.type in ("workspace", "space") or self.workspace

    @property
    def id(self) -> str:
        return self.page_id or self.database_id or self.block_id or self.space_id


class Icon(BaseModel):
    type: str = ""
    emoji: str = ""
    external: dict[str, Any] | None = None
    file: dict[str, Any] | None = None

    @property
    def value(self) -> str:
        if self.type == "emoji":
            return self.emoji
        source = self.external if self.type == "external" else self.file
        return str((source or {}).get("url", ""))


class Page(BaseModel):
    object: str = "page"
    id: str
    created_time: datetime | None = None
    last_edited_time: datetime | None = None
    created_by: User = Field(default_factory=User)
    last_edited_by: User = Field(default_factory=User)
    parent: Parent = Field(default_factory=Parent)
    archived: bool = False
    in_trash: bool = False
    icon: Icon | None = None
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    url: str = ""

    @property
    def display_title(self) -> str:
        """Title from the ``title`` property, then ``Name``, then any title-typed property."""
        for key in ("title", "Name"):
            prop = self.properties.get(key)
            if prop and prop.get("title"):
                return _rich_text_plain(prop["title"])
        for prop in self.properties.values():
            if prop.get("type") == "title" and prop.get("title"):
                return _rich_text_plain(prop["title"])
        return UNTITLED_TITLE


class DataSourceInfo(BaseModel):
    id: str
    name: str = ""


class Database(BaseModel):
    object: str = "database"
    id: str
    created_time: datetime | None = None
    last_edited_time: datetime | None = None
    created_by: User = Field(default_factory=User)
    last_edited_by: User = Field(default_factory=User)
    title: list[RichText] = Field(default_factory=list)
    description: list[RichText] = Field(default_factory=list)
    icon: Icon | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    parent: Parent = Field(default_factory=Parent)
    url: str = ""
    archived: bool = False
    in_trash: bool = False
    is_inline: bool = False
    data_sources: list[DataSourceInfo] = Field(default_factory=list)

    @property
    def display_title(self) -> str:
        return plain_text(self.title) or UNTITLED_TITLE


class Block(BaseModel):
    """A content block; the type-specific payload lives under ``block[block.type]``."""

    model_config = ConfigDict(extra="allow")

    object: str = "block"
    id: str
    type: str
    parent: Parent = Field(default_factory=Parent)
    created_time: datetime | None = None
    last_edited_time: datetime | None = None
    has_children: bool = False
    archived: bool = False
    in_trash: bool = False
    children: list[Block] = Field(default_factory=list, exclude=True)

    @property
    def payload(self) -> dict[str, Any]:
        value = (self.model_extra or {}).get(self.type)
        return value if isinstance(value, dict) else {}

    def rich_text(self, key: str = "rich_text") -> list[RichText]:
        return [RichText.model_validate(item) for item in self.payload.get(key) or []]


def _rich_text_plain(raw: list[dict[str, Any]]) -> str:
    return "".join(str(item.get("plain_text", "")) for item in raw)
