"""Attachment downloads for materialized pages.

Notion-hosted files are saved under ``<page dir>/<page name>/files/`` and
linked relatively from the page. Each download gets a file registry (so it
is fetched once) and a ``<name>.meta.json`` manifest next to it (so a name
clash can be told apart from the same file). Failed or oversize downloads
keep the original URL in the markdown.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import tempfile
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx
from pydantic import ValidationError

from ntnsync.exceptions import FileTooLargeError
from ntnsync.schemas.registry import FileManifest, FileRegistry
from ntnsync.services.datetime_service import now_utc
from ntnsync.services.slug_service import sanitize_filename

if TYPE_CHECKING:
    from ntnsync.services.crawler import Crawler

logger = logging.getLogger(__name__)

FILES_DIR = "files"
MANIFEST_SUFFIX = ".meta.json"
MAX_NAME_ATTEMPTS = 10
FILE_ID_LENGTH = 32
SHORT_ID_LENGTH = 8

_SPOOL_MAX_MEMORY = 1024 * 1024


def extract_file_id(url: str) -> str:
    """Return a stable id for an attachment URL.

    Notion's S3 URLs carry the file UUID as the second path segment; any
    other URL is identified by a hash of its query-less form, since signed
    query strings change on every fetch.
    """
    parsed = urlparse(url)
    if "s3" in parsed.netloc and "amazonaws.com" in parsed.netloc:
        parts = parsed.path.strip("/").split("/")
        if len(parts) >= 2 and parts[1]:
            return parts[1].replace("-", "").lower()
    stable = parsed._replace(query="", fragment="").geturl()
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()[:FILE_ID_LENGTH]


def local_filename(url: str) -> str:
    """Sanitized filename for *url*, keeping a lowercased extension."""
    name = unquote(urlparse(url).path.rsplit("/", maxsplit=1)[-1])
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    base = sanitize_filename(stem) if stem else "file"
    return f"{base}.{ext.lower()}" if ext else base


def files_dir(page_path: str) -> str:
    base = posixpath.basename(page_path).removesuffix(".md")
    return posixpath.join(posixpath.dirname(page_path), base, FILES_DIR)


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1024
        if value < 1024:
            break
    return f"{value:.1f} {unit}"


def _read_manifest(crawler: Crawler, path: str) -> FileManifest | None:
    reader = crawler.tx if crawler.tx is not None else crawler.store
    try:
        return FileManifest.model_validate_json(reader.read(path))
    except (FileNotFoundError, ValidationError):
        return None


def resolve_file_conflict(
    crawler: Crawler, directory: str, filename: str, file_id: str
) -> tuple[str, bool]:
    """Find a free name for *filename* in *directory*.

    Returns ``(name, already_present)``; ``already_present`` is True when a
    file with the same id is already stored under that name.
    """
    reader = crawler.tx if crawler.tx is not None else crawler.store
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        stem, ext = filename, ""
    suffix = f".{ext}" if ext else ""

    candidate = filename
    for _ in range(MAX_NAME_ATTEMPTS):
        path = posixpath.join(directory, candidate)
        if not reader.exists(path):
            return candidate, False
        manifest = _read_manifest(crawler, path + MANIFEST_SUFFIX)
        if manifest is not None and manifest.file_id == file_id:
            return candidate, True
        candidate = f"{stem}-{file_id[:SHORT_ID_LENGTH]}{suffix}"
    return candidate, False


async def download(crawler: Crawler, url: str, path: str) -> int:
    """Download *url* into the transaction at *path*; returns the size in bytes.

    The size limit is checked against ``Content-Length`` from a HEAD request
    and again while streaming the body. Raises FileTooLargeError or
    httpx.HTTPError.
    """
    limit = crawler.settings.max_file_size
    http = crawler.http
    try:
        head = await http.head(url)
        declared = int(head.headers.get("content-length", "0") or 0)
    except (httpx.HTTPError, ValueError):
        declared = 0
    if declared > limit:
        raise FileTooLargeError(declared, limit)

    tx = crawler.ensure_transaction()
    with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_MEMORY) as spool:
        received = 0
        async with http.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > limit:
                    raise FileTooLargeError(received, limit)
                spool.write(chunk)
        spool.seek(0)
        return tx.write_stream(path, spool, limit)


async def process_file(crawler: Crawler, url: str, page_path: str, page_id: str) -> str:
    """Make *url* available locally and return its path relative to the page's directory.

    Returns *url* unchanged when the download fails.
    """
    file_id = extract_file_id(url)
    page_dir = posixpath.dirname(page_path)

    registered = crawler.registry.find_file_by_id(file_id)
    if registered is not None:
        return posixpath.relpath(registered.file_path, page_dir or ".")

    directory = files_dir(page_path)
    name, present = resolve_file_conflict(crawler, directory, local_filename(url), file_id)
    path = posixpath.join(directory, name)
    if present:
        logger.debug("File %s already stored at %s", file_id, path)
        return posixpath.relpath(path, page_dir or ".")

    try:
        size = await download(crawler, url, path)
    except FileTooLargeError as exc:
        logger.warning(
            "Skipping file %s: %s exceeds limit %s",
            path,
            format_bytes(exc.size),
            format_bytes(exc.limit),
        )
        return url
    except httpx.HTTPError as exc:
        logger.warning("Failed to download %s: %s", url, exc)
        return url
    logger.info("Downloaded file %s (%s)", path, format_bytes(size))

    now = now_utc()
    crawler.registry.save_file(
        FileRegistry(id=file_id, file_path=path, source_url=url, last_synced=now)
    )
    manifest = FileManifest(file_id=file_id, parent_page_id=page_id, downloaded_at=now)
    crawler.ensure_transaction().write(
        path + MANIFEST_SUFFIX, manifest.model_dump_json(indent=2).encode("utf-8")
    )
    return posixpath.relpath(path, page_dir or ".")


async def download_files(
    crawler: Crawler, urls: list[str], page_path: str, page_id: str
) -> dict[str, str]:
    """Resolve every attachment URL of a page; returns a URL -> link mapping."""
    mapping: dict[str, str] = {}
    for url in urls:
        if url not in mapping:
            mapping[url] = await process_file(crawler, url, page_path, page_id)
    return mapping
