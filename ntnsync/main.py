"""Webhook server entry point and logging setup."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI

from ntnsync.api.health import router as health_router
from ntnsync.api.webhook import WebhookHandler, create_router
from ntnsync.config import Settings
from ntnsync.filesystem.split_store import open_store
from ntnsync.services.crawler import Crawler
from ntnsync.services.datetime_service import format_duration
from ntnsync.services.notion_client import NotionClient
from ntnsync.services.sync_worker import SyncWorker
from ntnsync.version import VERSION

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, extra record attributes included."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS:
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(verbose: bool = False, log_format: str = "text") -> None:
    """Configure application logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)
    fmt = log_format.strip().lower()
    if fmt == "json":
        for handler in logging.getLogger().handlers:
            handler.setFormatter(JSONFormatter())
    elif fmt not in ("", "text"):
        logger.warning("Unknown log format %r, using text", log_format)
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Start the sync worker on startup and cancel it on shutdown."""
    settings: Settings = app.state.settings
    handler: WebhookHandler = app.state.webhook_handler
    worker = handler.worker
    logger.info(
        "Starting ntnsync %s webhook server (path %s, auto_sync %s, sync_delay %s, storage %s)",
        VERSION,
        settings.webhook_path,
        worker is not None,
        format_duration(settings.webhook_sync_delay),
        settings.effective_storage_mode().value or "local",
    )

    worker_task: asyncio.Task[None] | None = None
    if worker is not None:
        worker_task = asyncio.create_task(worker.run())
        worker.notify()

    yield

    if worker_task is not None:
        worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker_task
    for task in list(handler.tasks):
        task.cancel()
    if app.state.owns_crawler:
        await handler.crawler.aclose()
        await handler.crawler.client.aclose()
    logger.info("ntnsync webhook server stopped")


def create_app(settings: Settings | None = None, crawler: Crawler | None = None) -> FastAPI:
    """Create the webhook application.

    Without *crawler*, a store and Notion client are built from *settings*.
    """
    if settings is None:
        settings = Settings()
    owns_crawler = crawler is None
    if crawler is None:
        crawler = Crawler(NotionClient(settings.notion_token), open_store(settings), settings)

    lock = asyncio.Lock()
    worker = SyncWorker(crawler, settings, lock=lock) if settings.webhook_auto_sync else None

    app = FastAPI(
        title="ntnsync",
        description="Notion to git synchronization webhook",
        version=VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.owns_crawler = owns_crawler
    app.state.webhook_handler = WebhookHandler(crawler, settings, worker, lock)

    app.include_router(health_router)
    app.include_router(create_router(settings.webhook_path))
    return app
