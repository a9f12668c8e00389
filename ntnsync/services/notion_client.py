"""Async Notion API client.

Every request waits on a shared token bucket (one call per 350 ms) and HTTP
429 responses are retried with doubling delays before giving up with
:class:`RateLimitedError`. Any other non-2xx response raises
:class:`NotionAPIError`.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from ntnsync.exceptions import (
    DatabaseObjectError,
    InvalidPageIdError,
    NotionAPIError,
    RateLimitedError,
)
from ntnsync.schemas.notion import Block, Database, Page, User, normalize_page_id
from ntnsync.services.rate_limit_service import TokenBucketRateLimiter

logger = logging.getLogger(__name__)

BASE_URL = "https://api.notion.com/v1"
API_VERSION = "2025-09-03"
HTTP_TIMEOUT_SECONDS = 30.0
RATE_LIMIT_INTERVAL = 0.35
MAX_RETRIES = 5
INITIAL_RETRY_DELAY = 1.0
PAGE_SIZE = 100

_ID_LENGTH = 32
_HEX_ID_RE = re.compile(r"[0-9a-fA-F]{32}")
_UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
_NO_DESCENT_TYPES = frozenset({"child_page", "child_database"})

SearchResult = Page | Database


def parse_page_id_or_url(value: str) -> str:
    """Extract a normalized page id from a raw id (with or without dashes) or a Notion URL.

    Raises InvalidPageIdError when no id can be found.
    """
    text = value.strip()
    if not text:
        msg = "page id or URL is empty"
        raise InvalidPageIdError(msg)

    if text.startswith(("http://", "https://")):
        parsed = urlparse(text)
        candidates = parse_qs(parsed.query).get("p", [])
        segments = [segment for segment in parsed.path.split("/") if segment]
        if segments:
            candidates.append(segments[-1])
        for candidate in candidates:
            match = _UUID_RE.search(candidate)
            if match:
                return normalize_page_id(match.group(0))
            if len(candidate) >= _ID_LENGTH and _HEX_ID_RE.fullmatch(candidate[-_ID_LENGTH:]):
                return normalize_page_id(candidate[-_ID_LENGTH:])
        msg = f"no page id found in URL: {value}"
        raise InvalidPageIdError(msg)

    clean = text.replace("-", "")
    if len(clean) != _ID_LENGTH:
        msg = f"invalid page id (expected 32 chars, got {len(clean)}): {clean}"
        raise InvalidPageIdError(msg)
    if not _HEX_ID_RE.fullmatch(clean):
        msg = f"invalid page id (not hexadecimal): {clean}"
        raise InvalidPageIdError(msg)
    return clean.lower()


@dataclass
class BlockFetchResult:
    blocks: list[Block] = field(default_factory=list)
    was_limited: bool = False
    depth_reached: int = 0


def _parse_error(response: httpx.Response) -> NotionAPIError:
    try:
        payload = response.json()
    except ValueError:
        return NotionAPIError(response.status_code, "", response.text)
    if not isinstance(payload, dict):
        return NotionAPIError(response.status_code, "", response.text)
    return NotionAPIError(
        response.status_code, str(payload.get("code", "")), str(payload.get("message", ""))
    )


def _search_result(item: dict[str, Any]) -> SearchResult | None:
    kind = item.get("object")
    if kind == "page":
        return Page.model_validate(item)
    if kind == "database":
        return Database.model_validate(item)
    if kind == "data_source":
        # A data source stands for its database container
        parent = item.get("parent") or {}
        database_id = parent.get("database_id", "")
        if not database_id:
            return None
        container = dict(item)
        container["id"] = database_id
        container["object"] = "database"
        container["parent"] = item.get("database_parent") or {}
        return Database.model_validate(container)
    return None


class NotionClient:
    """Thin async wrapper over the Notion REST API."""

    def __init__(
        self,
        token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = BASE_URL,
        rate_limit_interval: float = RATE_LIMIT_INTERVAL,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = INITIAL_RETRY_DELAY,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._limiter = TokenBucketRateLimiter(rate_limit_interval)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> NotionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Notion-Version": API_VERSION,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        delay = self.retry_delay
        started = time.monotonic()
        for attempt in range(1, self.max_retries + 1):
            await self._limiter.acquire()
            logger.debug("API request %s %s", method, path)
            response = await self._http.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=self._headers(),
            )
            if response.status_code == 429:
                logger.warning(
                    "Rate limited on %s %s (attempt %d), backing off %.1fs",
                    method,
                    path,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
                continue
            if response.status_code >= 400:
                raise _parse_error(response)
            logger.debug(
                "API response %s %s: %d in %.0fms",
                method,
                path,
                response.status_code,
                (time.monotonic() - started) * 1000,
            )
            data = response.json()
            return data if isinstance(data, dict) else {}
        raise RateLimitedError(self.max_retries)

    # ── Pages and databases ──────────────────────────

    async def get_page(self, page_id: str) -> Page:
        """Fetch a page; raises DatabaseObjectError when the id is a database."""
        try:
            data = await self._request("GET", f"/pages/{page_id}")
        except NotionAPIError as exc:
            if exc.code == "validation_error" and "is a database" in exc.message:
                raise DatabaseObjectError(page_id) from exc
            raise
        return Page.model_validate(data)

    async def get_database_container(self, database_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/databases/{database_id}")

    async def get_data_source(self, data_source_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/data_sources/{data_source_id}")

    async def get_database(self, database_id: str) -> Database:
        """Fetch a database container merged with the properties of its first data source."""
        container = await self.get_database_container(database_id)
        database = Database.model_validate(container)
        if database.data_sources:
            source = await self.get_data_source(database.data_sources[0].id)
            database.properties = source.get("properties") or {}
        else:
            logger.warning("Database %s has no data sources", database_id)
        return database

    async def query_database(self, database_id: str) -> list[Page]:
        """Return every page of the database's first data source."""
        container = await self.get_database_container(database_id)
        sources = container.get("data_sources") or []
        if not sources:
            logger.warning("Database %s has no data sources", database_id)
            return []
        source_id = sources[0]["id"]
        pages: list[Page] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {"page_size": PAGE_SIZE}
            if cursor:
                body["start_cursor"] = cursor
            result = await self._request("POST", f"/data_sources/{source_id}/query", json=body)
            pages.extend(
                Page.model_validate(item)
                for item in result.get("results", [])
                if item.get("object", "page") == "page"
            )
            cursor = result.get("next_cursor")
            if not result.get("has_more") or not cursor:
                break
        logger.info("Database %s query complete: %d page(s)", database_id, len(pages))
        return pages

    # ── Blocks ───────────────────────────────────────

    async def get_block(self, block_id: str) -> Block:
        return Block.model_validate(await self._request("GET", f"/blocks/{block_id}"))

    async def get_block_children(self, block_id: str) -> list[Block]:
        """Return all direct children of a block, following pagination."""
        blocks: list[Block] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"page_size": PAGE_SIZE}
            if cursor:
                params["start_cursor"] = cursor
            result = await self._request("GET", f"/blocks/{block_id}/children", params=params)
            blocks.extend(Block.model_validate(item) for item in result.get("results", []))
            cursor = result.get("next_cursor")
            if not result.get("has_more") or not cursor:
                return blocks

    async def get_all_block_children(self, block_id: str, max_depth: int = 0) -> BlockFetchResult:
        """Fetch the block tree below *block_id*.

        Children below *max_depth* (when > 0) are not fetched and the result
        is flagged as limited. Nested pages and databases are not descended
        into. A failing nested fetch is logged and that block's children are
        omitted.
        """
        result = BlockFetchResult()

        async def fetch(parent_id: str, depth: int) -> list[Block]:
            logger.debug("Fetching children of %s (depth %d)", parent_id, depth)
            result.depth_reached = max(result.depth_reached, depth)
            blocks = await self.get_block_children(parent_id)
            for block in blocks:
                if not block.has_children or block.type in _NO_DESCENT_TYPES:
                    continue
                if max_depth > 0 and depth >= max_depth:
                    result.was_limited = True
                    logger.info(
                        "Depth limit %d reached at block %s (%s), skipping children",
                        max_depth,
                        block.id,
                        block.type,
                    )
                    continue
                try:
                    block.children = await fetch(block.id, depth + 1)
                except (NotionAPIError, httpx.HTTPError) as exc:
                    logger.warning("Failed to get children of block %s: %s", block.id, exc)
            return blocks

        result.blocks = await fetch(block_id, 0)
        return result

    # ── Search and users ─────────────────────────────

    async def search(
        self,
        query: str = "",
        filter_type: str | None = None,
        stop: Callable[[list[SearchResult]], bool] | None = None,
    ) -> list[SearchResult]:
        """Search pages and databases, newest edit first.

        *stop* is called with everything fetched so far after each result
        page; returning True ends the scan.
        """
        found: list[SearchResult] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {
                "page_size": PAGE_SIZE,
                "sort": {"direction": "descending", "timestamp": "last_edited_time"},
            }
            if query:
                body["query"] = query
            if filter_type:
                value = "data_source" if filter_type == "database" else filter_type
                body["filter"] = {"property": "object", "value": value}
            if cursor:
                body["start_cursor"] = cursor
            result = await self._request("POST", "/search", json=body)
            for item in result.get("results", []):
                parsed = _search_result(item)
                if parsed is not None:
                    found.append(parsed)
            if stop is not None and stop(found):
                logger.info("Search stopped early after %d result(s)", len(found))
                return found
            cursor = result.get("next_cursor")
            if not result.get("has_more") or not cursor:
                break
        logger.info("Search found %d result(s)", len(found))
        return found

    async def get_user(self, user_id: str) -> User:
        return User.model_validate(await self._request("GET", f"/users/{user_id}"))

    async def get_me(self) -> dict[str, Any]:
        return await self._request("GET", "/users/me")
