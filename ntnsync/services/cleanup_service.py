"""Orphan sweep: remove pages no longer reachable from an enabled root."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ntnsync.exceptions import CycleError
from ntnsync.services.root_service import enabled_root_ids

if TYPE_CHECKING:
    from ntnsync.schemas.registry import PageRegistry
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    orphaned: list[str] = field(default_factory=list)
    deleted_files: int = 0
    deleted_registries: int = 0


def trace_to_root(registries: dict[str, PageRegistry], page_id: str) -> str:
    """Follow ``parent_id`` links to the owning root; "" when the chain breaks.

    Raises CycleError when the chain loops.
    """
    visited: set[str] = set()
    current = page_id
    while current:
        if current in visited:
            msg = f"cycle detected at page {current}"
            raise CycleError(msg)
        visited.add(current)
        registry = registries.get(current)
        if registry is None:
            return ""
        if registry.is_root:
            return current
        current = registry.parent_id
    return ""


def find_orphans(crawler: Crawler) -> list[PageRegistry]:
    """Return registries whose chain does not end at an enabled root listed in root.md."""
    roots = enabled_root_ids(crawler)
    registries = {registry.id: registry for registry in crawler.registry.list_page_registries()}
    logger.info("Checking %d registries against %d enabled root(s)", len(registries), len(roots))

    orphans: list[PageRegistry] = []
    for page_id, registry in sorted(registries.items()):
        try:
            root_id = trace_to_root(registries, page_id)
        except CycleError as exc:
            logger.warning("Cannot trace %s to a root: %s", page_id, exc)
            continue
        if root_id and root_id in roots:
            continue
        orphans.append(registry)
    return orphans


def cleanup(crawler: Crawler, dry_run: bool = False) -> CleanupResult:
    """Delete orphaned markdown files and registries in one transaction.

    A dry run only reports what would be deleted.
    """
    result = CleanupResult()
    orphans = find_orphans(crawler)
    tx = None if dry_run else crawler.ensure_transaction()

    for registry in orphans:
        result.orphaned.append(registry.id)
        logger.info(
            "Orphaned page %s (%s) at %s%s",
            registry.id,
            registry.title,
            registry.file_path or "-",
            " [dry run]" if dry_run else "",
        )
        if tx is None:
            continue
        if registry.file_path and tx.exists(registry.file_path):
            tx.delete(registry.file_path)
            result.deleted_files += 1
        crawler.registry.delete_page(registry.id)
        result.deleted_registries += 1

    if tx is not None:
        crawler.apply()
    logger.info(
        "Cleanup %s: %d orphan(s), %d file(s) and %d registries deleted",
        "dry run" if dry_run else "complete",
        len(result.orphaned),
        result.deleted_files,
        result.deleted_registries,
    )
    return result
