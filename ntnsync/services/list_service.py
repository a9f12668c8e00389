"""Read-only views over the registries for the ``list`` and ``status`` commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ntnsync.schemas.registry import PageRegistry
    from ntnsync.services.crawler import Crawler


@dataclass
class PageNode:
    id: str
    title: str
    path: str
    last_synced: datetime | None
    is_root: bool
    is_orphaned: bool
    parent_id: str
    children: list[PageNode] = field(default_factory=list)


@dataclass
class FolderListing:
    name: str
    root_pages: int = 0
    total_pages: int = 0
    orphaned_pages: int = 0
    pages: list[PageNode] = field(default_factory=list)


@dataclass
class QueueInfo:
    filename: str
    folder: str
    type: str
    page_count: int


@dataclass
class FolderStatus:
    name: str
    page_count: int = 0
    root_pages: int = 0
    queued_pages: int = 0
    last_synced: datetime | None = None


@dataclass
class StatusInfo:
    last_pull_time: datetime | None = None
    total_pages: int = 0
    total_root_pages: int = 0
    folders: dict[str, FolderStatus] = field(default_factory=dict)
    queue: list[QueueInfo] = field(default_factory=list)

    @property
    def queued_pages(self) -> int:
        return sum(info.page_count for info in self.queue)


def _group_by_folder(registries: list[PageRegistry]) -> dict[str, list[PageRegistry]]:
    grouped: dict[str, list[PageRegistry]] = {}
    for registry in registries:
        grouped.setdefault(registry.folder, []).append(registry)
    return grouped


def _folder_names(
    crawler: Crawler, grouped: dict[str, list[PageRegistry]], folder: str
) -> list[str]:
    names = sorted(set(crawler.state.folders) | {name for name in grouped if name})
    if folder:
        return [name for name in names if name == folder]
    return names


def build_tree(nodes: list[PageNode]) -> list[PageNode]:
    """Nest *nodes* by ``parent_id``; nodes whose parent is not listed become top-level."""
    by_id = {node.id: node for node in nodes}
    top: list[PageNode] = []
    for node in nodes:
        parent = by_id.get(node.parent_id) if node.parent_id else None
        if parent is None or parent is node:
            top.append(node)
        else:
            parent.children.append(node)
    return top


def list_folders(crawler: Crawler, folder: str = "", tree: bool = False) -> list[FolderListing]:
    """Return the pages of each known folder, flat or nested.

    A page is orphaned when its ``parent_id`` points to a page without a
    registry.
    """
    crawler.load_state()
    registries = crawler.registry.list_page_registries()
    known = {registry.id for registry in registries}
    grouped = _group_by_folder(registries)

    listings: list[FolderListing] = []
    for name in _folder_names(crawler, grouped, folder):
        listing = FolderListing(name=name)
        nodes: list[PageNode] = []
        for registry in sorted(grouped.get(name, []), key=lambda r: (r.file_path, r.id)):
            orphaned = bool(registry.parent_id) and registry.parent_id not in known
            nodes.append(
                PageNode(
                    id=registry.id,
                    title=registry.title,
                    path=registry.file_path,
                    last_synced=registry.last_synced,
                    is_root=registry.is_root,
                    is_orphaned=orphaned,
                    parent_id=registry.parent_id,
                )
            )
            listing.total_pages += 1
            listing.root_pages += registry.is_root
            listing.orphaned_pages += orphaned
        listing.pages = build_tree(nodes) if tree else nodes
        listings.append(listing)
    return listings


def status(crawler: Crawler, folder: str = "") -> StatusInfo:
    crawler.load_state()
    info = StatusInfo(last_pull_time=crawler.state.last_pull_time)
    grouped = _group_by_folder(crawler.registry.list_page_registries())

    for name in _folder_names(crawler, grouped, folder):
        registries = grouped.get(name, [])
        synced = [r.last_synced for r in registries if r.last_synced is not None]
        folder_status = FolderStatus(
            name=name,
            page_count=len(registries),
            root_pages=sum(1 for r in registries if r.is_root),
            last_synced=max(synced) if synced else None,
        )
        info.folders[name] = folder_status
        info.total_pages += folder_status.page_count
        info.total_root_pages += folder_status.root_pages

    for filename, entry in crawler.queue.entries():
        if folder and entry.folder != folder:
            continue
        info.queue.append(
            QueueInfo(
                filename=filename,
                folder=entry.folder,
                type=str(entry.type),
                page_count=len(entry.pages),
            )
        )
        if entry.folder in info.folders:
            info.folders[entry.folder].queued_pages += len(entry.pages)
    return info
