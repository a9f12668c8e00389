"""Rebuild page registries from the front matter of materialized markdown files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import yaml

from ntnsync.filesystem.frontmatter import SyncedPageData, parse_synced_page
from ntnsync.schemas.registry import PageRegistry
from ntnsync.services.crawler import content_hash
from ntnsync.services.registry_service import STATE_DIR
from ntnsync.services.root_service import ROOT_MD

if TYPE_CHECKING:
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class ReindexResult:
    files_scanned: int = 0
    registries_written: int = 0
    registries_deleted: int = 0
    duplicates_removed: int = 0


@dataclass
class _Scanned:
    data: SyncedPageData
    path: str
    digest: str


def find_markdown_files(crawler: Crawler) -> list[str]:
    """Every ``.md`` path outside dot directories, root.md excluded."""
    paths: list[str] = []
    for path in crawler.store.walk_files():
        if not path.endswith(".md") or path == ROOT_MD:
            continue
        parts = path.split("/")
        if parts[0] == STATE_DIR or any(part.startswith(".") for part in parts[:-1]):
            continue
        paths.append(path)
    return paths


def _scan(crawler: Crawler, paths: list[str]) -> dict[str, list[_Scanned]]:
    by_id: dict[str, list[_Scanned]] = {}
    for path in paths:
        raw = crawler.store.read(path)
        try:
            data = parse_synced_page(raw.decode("utf-8"), path)
        except (UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.warning("Failed to parse %s: %s", path, exc)
            continue
        if data is None:
            logger.warning("Skipping %s: no notion_id in front matter", path)
            continue
        by_id.setdefault(data.notion_id, []).append(
            _Scanned(data=data, path=path, digest=content_hash(raw))
        )
    return by_id


def _newest(copies: list[_Scanned]) -> _Scanned:
    """The copy with the latest ``last_edited``; the first one on ties."""
    best = copies[0]
    for copy in copies[1:]:
        if (copy.data.last_edited or _EPOCH) > (best.data.last_edited or _EPOCH):
            best = copy
    return best


def _build_registry(scanned: _Scanned, existing: PageRegistry | None) -> PageRegistry:
    data = scanned.data
    folder = data.folder or scanned.path.split("/", maxsplit=1)[0]
    is_root = existing.is_root if existing is not None else data.is_root
    return PageRegistry(
        id=data.notion_id,
        type=data.notion_type,
        folder=folder,
        file_path=scanned.path,
        title=data.title,
        last_edited=data.last_edited,
        last_synced=data.last_synced,
        is_root=is_root,
        enabled=existing.enabled if existing is not None and is_root else False,
        parent_id="" if is_root else data.parent_id,
        content_hash=scanned.digest,
    )


def _link_children(registries: dict[str, PageRegistry], previous: dict[str, PageRegistry]) -> None:
    """Recompute ``children`` from ``parent_id``, keeping the previous order where known."""
    found: dict[str, list[str]] = {}
    for registry in sorted(registries.values(), key=lambda r: r.file_path):
        if registry.parent_id in registries:
            found.setdefault(registry.parent_id, []).append(registry.id)
    for page_id, registry in registries.items():
        children = found.get(page_id, [])
        old = previous[page_id].children if page_id in previous else []
        ordered = [child for child in old if child in children]
        ordered += [child for child in children if child not in ordered]
        registry.children = ordered


def reindex(crawler: Crawler, dry_run: bool = False) -> ReindexResult:
    """Rebuild page registries from the markdown files in the store.

    When several files carry the same ``notion_id`` the one with the newest
    ``last_edited`` wins and the others are deleted. Registries that have no
    file left are removed, except root stubs from root.md. ``enabled`` and
    ``is_root`` survive from the existing registries.
    """
    crawler.apply()
    crawler.load_state()
    result = ReindexResult()
    paths = find_markdown_files(crawler)
    result.files_scanned = len(paths)
    logger.info("Reindexing %d markdown file(s)%s", len(paths), " [dry run]" if dry_run else "")

    previous = {registry.id: registry for registry in crawler.registry.list_page_registries()}
    by_id = _scan(crawler, paths)

    rebuilt: dict[str, PageRegistry] = {}
    stale_files: list[str] = []
    for page_id, copies in by_id.items():
        keep = _newest(copies)
        if len(copies) > 1:
            logger.warning(
                "Duplicate notion_id %s in %d files, keeping %s", page_id, len(copies), keep.path
            )
            stale_files.extend(copy.path for copy in copies if copy is not keep)
        rebuilt[page_id] = _build_registry(keep, previous.get(page_id))

    _link_children(rebuilt, previous)
    stale_registries = [
        registry.id
        for registry in previous.values()
        if registry.id not in rebuilt and not registry.is_root
    ]

    result.duplicates_removed = len(stale_files)
    result.registries_written = len(rebuilt)
    result.registries_deleted = len(stale_registries)
    if dry_run:
        logger.info(
            "Dry run: would write %d registries, delete %d registries and %d duplicate file(s)",
            result.registries_written,
            result.registries_deleted,
            result.duplicates_removed,
        )
        return result

    tx = crawler.ensure_transaction()
    for registry in rebuilt.values():
        crawler.registry.save_page(registry)
    for page_id in stale_registries:
        logger.info("Removing registry %s: no markdown file left", page_id)
        crawler.registry.delete_page(page_id)
    for path in stale_files:
        logger.info("Deleting duplicate %s", path)
        tx.delete(path)
    for registry in rebuilt.values():
        crawler.state.add_folder(registry.folder)
    crawler.save_state()
    crawler.apply()

    logger.info(
        "Reindex complete: %d registries written, %d removed, %d duplicate(s) deleted",
        result.registries_written,
        result.registries_deleted,
        result.duplicates_removed,
    )
    return result
