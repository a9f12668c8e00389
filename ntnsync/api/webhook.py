"""Notion webhook endpoint: verify, acknowledge, then queue the changed page."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import subprocess
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from ntnsync.exceptions import NtnsyncError
from ntnsync.schemas.notion import normalize_page_id
from ntnsync.schemas.webhook import Event
from ntnsync.services.crawler import DEFAULT_FOLDER
from ntnsync.services.sync_worker import push_with_retry

if TYPE_CHECKING:
    from ntnsync.config import Settings
    from ntnsync.services.crawler import Crawler
    from ntnsync.services.sync_worker import SyncWorker

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Notion-Webhook-Signature"
TIMESTAMP_HEADER = "Notion-Webhook-Timestamp"
MAX_TIMESTAMP_AGE_SECONDS = 5 * 60

CHANGE_EVENTS = frozenset(
    {
        "page.created",
        "page.updated",
        "page.content_updated",
        "page.properties_updated",
        "database.created",
        "database.updated",
        "database.content_updated",
        "database.properties_updated",
    }
)
DELETION_EVENTS = frozenset(
    {"page.deleted", "page.undeleted", "database.deleted", "database.undeleted"}
)


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``timestamp + body``."""
    message = timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def timestamp_is_fresh(timestamp: str, now: float | None = None) -> bool:
    try:
        sent = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    return abs(current - sent) < MAX_TIMESTAMP_AGE_SECONDS


def verify_signature(secret: str, signature: str, timestamp: str, body: bytes) -> bool:
    """Check a delivery's signature; always True when no secret is configured."""
    if not secret:
        return True
    if not signature or not timestamp:
        logger.debug("Missing signature or timestamp header")
        return False
    if not timestamp_is_fresh(timestamp):
        logger.debug("Stale webhook timestamp %s", timestamp)
        return False
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


class WebhookHandler:
    """Routes verified events to the queue and wakes the sync worker."""

    def __init__(
        self,
        crawler: Crawler,
        settings: Settings,
        worker: SyncWorker | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self.crawler = crawler
        self.settings = settings
        self.worker = worker
        self.lock = lock or asyncio.Lock()
        self.tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, event: Event) -> asyncio.Task[None]:
        """Process *event* in a detached task that outlives the request."""
        task = asyncio.create_task(self.process_event(event))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def process_event(self, event: Event) -> None:
        logger.info(
            "Processing webhook event %s (entity %s %s, workspace %s)",
            event.type or "-",
            event.entity_type or "-",
            event.entity_id or "-",
            event.workspace_name or "-",
        )
        if event.type in CHANGE_EVENTS:
            try:
                await self.handle_change(event)
            except (NtnsyncError, OSError, subprocess.CalledProcessError) as exc:
                logger.error("Failed to queue %s from webhook: %s", event.entity_id, exc)
        elif event.type in DELETION_EVENTS:
            logger.info(
                "Deletion event %s for %s ignored; run cleanup to remove orphans",
                event.type,
                event.entity_id,
            )
        elif not event.type:
            if event.verification_token:
                logger.info("Webhook verification token received: %s", event.verification_token)
            else:
                logger.warning("Webhook event without type or verification token")
        else:
            logger.warning("Unhandled webhook event type %s", event.type)

    async def handle_change(self, event: Event) -> None:
        page_id = normalize_page_id(event.entity_id)
        if not page_id:
            logger.warning("%s event without entity id", event.type)
            return

        async with self.lock:
            crawler = self.crawler
            crawler.ensure_transaction()
            registry = crawler.registry.find_page_by_id(page_id)
            if registry is not None and registry.folder:
                folder = registry.folder
            else:
                logger.info("%s is not tracked yet, using folder %s", page_id, DEFAULT_FOLDER)
                folder = DEFAULT_FOLDER
            filename = crawler.queue.create_priority_entry(page_id, folder)
            crawler.apply()
            logger.info(
                "Queued %s %s in %s (folder %s)",
                event.entity_type or "page",
                page_id,
                filename,
                folder,
            )

            if self.settings.commit_enabled():
                crawler.checkpoint(f"[ntnsync] webhook: queued page {page_id}")
                if self.settings.push_enabled() and crawler.store.remote_enabled():
                    await push_with_retry(crawler)

        if self.worker is not None:
            self.worker.notify()


def create_router(path: str) -> APIRouter:
    router = APIRouter(tags=["webhook"])

    @router.post(path)
    async def receive_event(request: Request) -> Response:
        handler: WebhookHandler = request.app.state.webhook_handler
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER, "")
        timestamp = request.headers.get(TIMESTAMP_HEADER, "")
        if not verify_signature(handler.settings.webhook_secret, signature, timestamp, body):
            logger.warning("Rejected webhook with invalid signature")
            return JSONResponse(status_code=401, content={"detail": "Invalid signature"})

        logger.debug("Received webhook payload: %s", body.decode("utf-8", errors="replace"))
        try:
            event = Event.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            logger.warning("Invalid webhook payload: %s", exc)
            return JSONResponse(status_code=400, content={"detail": "Invalid payload"})

        logger.info(
            "Received webhook event %s for %s %s",
            event.type or "-",
            event.entity_type or "-",
            event.entity_id or "-",
        )
        handler.dispatch(event)
        return Response(status_code=200)

    return router

