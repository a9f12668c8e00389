"""Convert Notion pages and databases to markdown with YAML front matter.

Conversion is pure: the block tree is walked recursively and nothing is
fetched or written. Attachment URLs are passed through an optional
``file_processor`` so the caller can substitute local paths.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ntnsync.filesystem.frontmatter import serialize_document
from ntnsync.schemas.notion import (
    Block,
    Database,
    Page,
    RichText,
    User,
    normalize_page_id,
    plain_text,
)
from ntnsync.services.datetime_service import format_rfc3339
from ntnsync.services.slug_service import sanitize_filename
from ntnsync.version import VERSION

if TYPE_CHECKING:
    from ntnsync.schemas.notion import Icon

FileProcessor = Callable[[str], str]

FILE_BLOCK_TYPES = frozenset({"image", "video", "file", "pdf", "audio"})
_LIST_TYPES = frozenset({"bulleted_list_item", "numbered_list_item", "to_do"})
_FILE_LABELS = {"image": "image", "video": "Video", "file": "File", "pdf": "PDF", "audio": "Audio"}


@dataclass
class ConvertOptions:
    folder: str = ""
    page_title: str = ""
    file_path: str = ""
    last_synced: datetime | None = None
    notion_type: str = "page"
    parent_id: str = ""
    is_root: bool = False
    simplified_depth: int = 0
    file_processor: FileProcessor | None = None


# ── Rich text ────────────────────────────────────────


def rich_text_to_markdown(items: list[RichText]) -> str:
    parts: list[str] = []
    for item in items:
        text = item.plain_text
        if item.type == "mention" and item.mention is not None:
            if item.mention.user is not None:
                text = "@" + item.mention.user.format()
        elif item.type == "equation" and item.equation is not None:
            text = f"${item.equation.get('expression', text)}$"

        annotations = item.annotations
        if annotations is not None and text.strip():
            if annotations.code:
                text = f"`{text}`"
            if annotations.bold:
                text = f"**{text}**"
            if annotations.italic:
                text = f"_{text}_"
            if annotations.strikethrough:
                text = f"~~{text}~~"
        if item.href:
            text = f"[{text}]({item.href})"
        parts.append(text)
    return "".join(parts)


# ── Front matter ─────────────────────────────────────


def format_icon(icon: Icon | None) -> str:
    if icon is None or not icon.value:
        return ""
    return f"{icon.type}:{icon.value}"


def property_value(prop: dict[str, Any]) -> Any:
    """Reduce a page property to a scalar or list of strings; None when empty or a title."""
    kind = prop.get("type", "")
    value = prop.get(kind)
    if kind == "title" or value is None:
        return None
    if kind == "rich_text":
        return _raw_plain(value) or None
    if kind in ("select", "status"):
        return value.get("name")
    if kind == "multi_select":
        return [option.get("name", "") for option in value] or None
    if kind == "date":
        return value.get("start")
    if kind in ("number", "checkbox", "url", "email", "phone_number"):
        return value
    if kind in ("created_time", "last_edited_time"):
        return value
    if kind in ("people", "relation"):
        return [entry.get("id", "") for entry in value] or None
    if kind in ("created_by", "last_edited_by"):
        return value.get("id")
    if kind in ("formula", "rollup"):
        inner_kind = value.get("type", "")
        inner = value.get(inner_kind)
        if inner_kind == "date" and isinstance(inner, dict):
            return inner.get("start")
        if inner_kind in ("string", "number", "boolean"):
            return inner
        return None
    if kind == "unique_id":
        prefix = value.get("prefix")
        number = value.get("number")
        return f"{prefix}-{number}" if prefix else number
    return None


def _raw_plain(items: list[dict[str, Any]]) -> str:
    return "".join(str(item.get("plain_text", "")) for item in items)


def _front_matter(
    *,
    notion_id: str,
    title: str,
    created_by: User,
    last_edited_by: User,
    last_edited: datetime | None,
    icon: Icon | None,
    url: str,
    options: ConvertOptions,
    properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "ntnsync_version": VERSION,
        "notion_id": normalize_page_id(notion_id),
        "title": title,
        "notion_type": options.notion_type or "page",
    }
    if options.folder:
        meta["notion_folder"] = options.folder
    if options.file_path:
        meta["file_path"] = options.file_path
    if created_by.id:
        meta["created_by"] = created_by.format()
    if last_edited_by.id:
        meta["last_edited_by"] = last_edited_by.format()
    meta["last_edited"] = format_rfc3339(last_edited)
    if options.last_synced is not None:
        meta["last_synced"] = format_rfc3339(options.last_synced)
    if icon_value := format_icon(icon):
        meta["icon"] = icon_value
    if options.parent_id:
        meta["notion_parent_id"] = options.parent_id
    meta["is_root"] = options.is_root
    meta["notion_url"] = url
    if options.simplified_depth > 0:
        meta["simplified_depth"] = options.simplified_depth
    if properties:
        meta["properties"] = properties
    return meta


# ── Blocks ───────────────────────────────────────────


def _file_url(payload: dict[str, Any]) -> str:
    source = payload.get("external") or payload.get("file") or {}
    return str(source.get("url", ""))


def _child_dir(options: ConvertOptions) -> str:
    if options.file_path:
        return options.file_path.rsplit("/", maxsplit=1)[-1].removesuffix(".md")
    return sanitize_filename(options.page_title)


def _collapsible(heading: str, block: Block, options: ConvertOptions) -> str:
    return (
        f"{heading}\n<!-- collapsible: start -->\n"
        f"{convert_blocks(block.children, 0, options)}"
        "<!-- collapsible: end -->\n"
    )


def convert_block(block: Block, depth: int, options: ConvertOptions, number: int = 1) -> str:
    """Render one block (and its children) at list nesting *depth*."""
    indent = "  " * depth
    payload = block.payload
    kind = block.type

    if kind == "paragraph":
        text = rich_text_to_markdown(block.rich_text())
        if not text:
            return "\n"
        return f"{text}\n{convert_blocks(block.children, depth, options)}"

    if kind in ("heading_1", "heading_2", "heading_3"):
        heading = "#" * int(kind[-1]) + " " + rich_text_to_markdown(block.rich_text())
        if payload.get("is_toggleable"):
            return _collapsible(heading, block, options)
        return heading + "\n"

    if kind == "bulleted_list_item":
        text = rich_text_to_markdown(block.rich_text())
        return f"{indent}- {text}\n{convert_blocks(block.children, depth + 1, options)}"

    if kind == "numbered_list_item":
        text = rich_text_to_markdown(block.rich_text())
        return f"{indent}{number}. {text}\n{convert_blocks(block.children, depth + 1, options)}"

    if kind == "to_do":
        checkbox = "[x]" if payload.get("checked") else "[ ]"
        text = rich_text_to_markdown(block.rich_text())
        return f"{indent}- {checkbox} {text}\n{convert_blocks(block.children, depth + 1, options)}"

    if kind == "toggle":
        summary = rich_text_to_markdown(block.rich_text())
        return (
            f"<details>\n<summary>{summary}</summary>\n\n"
            f"{convert_blocks(block.children, 0, options)}"
            "</details>\n"
        )

    if kind == "code":
        language = payload.get("language", "")
        if language == "plain text":
            language = ""
        return f"```{language}\n{plain_text(block.rich_text())}\n```\n"

    if kind in ("quote", "callout"):
        text = rich_text_to_markdown(block.rich_text())
        prefix = ""
        if kind == "callout":
            icon = payload.get("icon") or {}
            if icon.get("emoji"):
                prefix = icon["emoji"] + " "
        lines = text.split("\n")
        quoted = [f"> {prefix}{lines[0]}"] + [f"> {line}" for line in lines[1:]]
        return "\n".join(quoted) + "\n" + convert_blocks(block.children, depth, options)

    if kind == "divider":
        return "---\n"

    if kind in FILE_BLOCK_TYPES:
        url = _file_url(payload)
        if options.file_processor is not None and url:
            url = options.file_processor(url)
        label = plain_text(block.rich_text("caption"))
        if kind == "file" and not label:
            label = payload.get("name", "")
        label = label or _FILE_LABELS[kind]
        marker = "!" if kind == "image" else ""
        return f"{marker}[{label}]({url})<!-- file_id:{normalize_page_id(block.id)} -->\n"

    if kind in ("bookmark", "embed", "link_preview"):
        url = payload.get("url", "")
        caption = plain_text(block.rich_text("caption")) or url
        return f"[{caption}]({url})\n"

    if kind == "equation":
        return f"$$\n{payload.get('expression', '')}\n$$\n"

    if kind == "table_of_contents":
        return "[TOC]\n"

    if kind in ("child_page", "child_database"):
        title = payload.get("title") or "Untitled"
        child_id = normalize_page_id(block.id)
        link = f"./{_child_dir(options)}/{sanitize_filename(title)}.md"
        return f"- [{title}]({link})<!-- page_id:{child_id} -->\n"

    if kind in ("synced_block", "column_list", "column"):
        return convert_blocks(block.children, depth, options)

    if kind == "table":
        return _convert_table(block)

    if kind == "link_to_page":
        if page_id := payload.get("page_id"):
            norm = normalize_page_id(page_id)
            return f"[Page Link](notion://page/{page_id})<!-- page_id:{norm} -->\n"
        if database_id := payload.get("database_id"):
            norm = normalize_page_id(database_id)
            return f"[Database Link](notion://database/{database_id})<!-- page_id:{norm} -->\n"
        return ""

    return f"<!-- unsupported block: {kind} -->\n"


def _convert_table(block: Block) -> str:
    if not block.children:
        return ""
    width = int(block.payload.get("table_width", 0))
    has_header = bool(block.payload.get("has_column_header"))
    lines: list[str] = []
    for index, row in enumerate(block.children):
        if row.type != "table_row":
            continue
        cells = row.payload.get("cells") or []
        rendered = []
        for column in range(width or len(cells)):
            raw = cells[column] if column < len(cells) else []
            cell = rich_text_to_markdown([RichText.model_validate(item) for item in raw])
            rendered.append(cell.replace("|", "\\|"))
        lines.append("| " + " | ".join(rendered) + " |")
        if index == 0 and has_header:
            lines.append("|" + " --- |" * len(rendered))
    return "\n".join(lines) + "\n"


def convert_blocks(blocks: list[Block], depth: int, options: ConvertOptions) -> str:
    """Render sibling blocks; numbered items are renumbered per consecutive run."""
    out: list[str] = []
    number = 0
    for block in blocks:
        number = number + 1 if block.type == "numbered_list_item" else 0
        out.append(convert_block(block, depth, options, number or 1))
    return "".join(out)


def _convert_body(blocks: list[Block], options: ConvertOptions) -> str:
    out: list[str] = []
    number = 0
    for index, block in enumerate(blocks):
        number = number + 1 if block.type == "numbered_list_item" else 0
        content = convert_block(block, 0, options, number or 1)
        out.append(content)
        if index < len(blocks) - 1 and content:
            following = blocks[index + 1]
            if block.type not in _LIST_TYPES or following.type not in _LIST_TYPES:
                out.append("\n")
    return "".join(out)


# ── Entry points ─────────────────────────────────────


def convert_page(page: Page, blocks: list[Block], options: ConvertOptions) -> bytes:
    """Render a page as front matter, a ``# title`` heading and its block body."""
    title = page.display_title
    properties: dict[str, Any] = {}
    if page.parent.database_id:
        for name, prop in page.properties.items():
            value = property_value(prop)
            if value is not None and value != "":
                properties[name] = value
    meta = _front_matter(
        notion_id=page.id,
        title=title or options.page_title,
        created_by=page.created_by,
        last_edited_by=page.last_edited_by,
        last_edited=page.last_edited_time,
        icon=page.icon,
        url=page.url,
        options=options,
        properties=properties,
    )
    body = f"# {title}\n\n{_convert_body(blocks, options)}"
    return serialize_document(meta, body).encode("utf-8")


def convert_database(database: Database, children: list[Page], options: ConvertOptions) -> bytes:
    """Render a database as front matter, its description and links to its direct child pages."""
    title = database.display_title
    meta = _front_matter(
        notion_id=database.id,
        title=title,
        created_by=database.created_by,
        last_edited_by=database.last_edited_by,
        last_edited=database.last_edited_time,
        icon=database.icon,
        url=database.url,
        options=options,
    )
    lines = [f"# {title}", ""]
    description = plain_text(database.description)
    if description:
        lines += [description, ""]

    db_id = normalize_page_id(database.id)
    direct = [
        page
        for page in children
        if normalize_page_id(page.parent.database_id or page.parent.data_source_id) == db_id
        or (page.parent.data_source_id and not page.parent.database_id)
    ]
    if direct:
        base = _child_dir(options)
        for page in direct:
            child_title = page.display_title
            link = f"./{base}/{sanitize_filename(child_title)}.md"
            lines.append(f"- [{child_title}]({link})<!-- page_id:{normalize_page_id(page.id)} -->")
        lines.append("")
    else:
        lines += ["*This database has no direct child pages.*", ""]
    return serialize_document(meta, "\n".join(lines)).encode("utf-8")


def collect_file_urls(blocks: list[Block]) -> list[str]:
    """Return Notion-hosted attachment URLs in document order, without duplicates."""
    urls: list[str] = []
    for block in blocks:
        if block.type in FILE_BLOCK_TYPES:
            hosted = block.payload.get("file") or {}
            url = hosted.get("url")
            if url and url not in urls:
                urls.append(url)
        for url in collect_file_urls(block.children):
            if url not in urls:
                urls.append(url)
    return urls
