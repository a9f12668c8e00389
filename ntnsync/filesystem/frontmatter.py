"""YAML front matter parser/serializer for materialized Notion pages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import frontmatter
import yaml
from frontmatter.default_handlers import YAMLHandler

from ntnsync.schemas.notion import normalize_page_id
from ntnsync.services.datetime_service import parse_datetime


@dataclass
class SyncedPageData:
    """Metadata recovered from the front matter of a synced markdown file."""

    notion_id: str
    notion_type: str
    folder: str
    file_path: str
    title: str
    last_edited: datetime | None
    last_synced: datetime | None
    is_root: bool
    parent_id: str


def extract_title(content: str, file_path: str = "") -> str:
    """Extract title from the first ``#`` heading in the markdown body.

    Falls back to the filename without its extension.
    """
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped.removeprefix("# ").strip()
    if file_path:
        return file_path.rsplit("/", maxsplit=1)[-1].removesuffix(".md")
    return ""


class RawYAMLHandler(YAMLHandler):
    """Loads front matter with every scalar kept as a string.

    Notion ids made only of digits would otherwise load as (octal) integers.
    """

    def load(self, fm: str, **kwargs: object) -> Any:
        return yaml.load(fm, Loader=yaml.BaseLoader)  # noqa: S506


def _as_datetime(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return parse_datetime(value)
    if isinstance(value, date):
        return parse_datetime(datetime(value.year, value.month, value.day))
    if value is None or value == "":
        return None
    try:
        return parse_datetime(str(value))
    except ValueError:
        return None


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def parse_synced_page(raw_content: str, file_path: str = "") -> SyncedPageData | None:
    """Parse a synced markdown file; returns None when it carries no ``notion_id``.

    Raises ``yaml.YAMLError`` when the front matter is not valid YAML.
    """
    post = frontmatter.loads(raw_content, handler=RawYAMLHandler())
    raw_id = post.get("notion_id")
    if raw_id is None or str(raw_id).strip() == "":
        return None

    return SyncedPageData(
        notion_id=normalize_page_id(str(raw_id)),
        notion_type=str(post.get("notion_type") or "page"),
        folder=str(post.get("notion_folder") or ""),
        file_path=str(post.get("file_path") or file_path),
        title=extract_title(post.content, file_path),
        last_edited=_as_datetime(post.get("last_edited")),
        last_synced=_as_datetime(post.get("last_synced")),
        is_root=_as_bool(post.get("is_root", False)),
        parent_id=normalize_page_id(str(post.get("notion_parent_id") or "")),
    )


def serialize_document(metadata: dict[str, Any], body: str) -> str:
    """Render *metadata* as front matter (keys in insertion order) followed by *body*."""
    post = frontmatter.Post(body, **metadata)
    return str(frontmatter.dumps(post, sort_keys=False)) + "\n"
