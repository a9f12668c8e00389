"""ntnsync command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import logging
import subprocess
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path

import httpx

from ntnsync.config import Settings
from ntnsync.exceptions import NtnsyncError
from ntnsync.filesystem.split_store import open_store
from ntnsync.main import configure_logging
from ntnsync.services import cleanup_service, list_service, reindex_service, root_service
from ntnsync.services.crawler import Crawler
from ntnsync.services.datetime_service import format_duration, format_rfc3339, parse_duration
from ntnsync.services.git_service import redact_url
from ntnsync.services.list_service import PageNode
from ntnsync.services.notion_client import NotionClient, parse_page_id_or_url
from ntnsync.services.process_service import ProcessOptions
from ntnsync.services.pull_service import PullOptions, pull
from ntnsync.services.sync_worker import commit_and_push, run_sync
from ntnsync.version import BUILD_TIME, COMMIT, VERSION

logger = logging.getLogger(__name__)

Command = Callable[[Crawler, Settings, argparse.Namespace], Awaitable[None]]

NEEDS_TOKEN = frozenset({"add", "get", "scan", "pull", "sync"})


async def finish(crawler: Crawler, settings: Settings, reason: str) -> None:
    """Commit (and push) when commits are enabled, else leave changes in the working tree."""
    if settings.commit_enabled():
        await commit_and_push(crawler, settings, reason)
    else:
        crawler.apply()


# ── Commands ─────────────────────────────────────────


async def cmd_add(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    entry = await root_service.add_root(crawler, args.page, args.folder, enabled=not args.disabled)
    await finish(crawler, settings, f"add root {entry.page_id}")
    state = "enabled" if entry.enabled else "disabled"
    print(f"Added {entry.page_id} to folder {entry.folder} ({state}).")
    print("Run 'sync' to download it.")


async def cmd_get(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    page_id = parse_page_id_or_url(args.page)
    written = await crawler.get_page(page_id, args.folder)
    await finish(crawler, settings, f"get page {page_id}")
    print(f"Page {page_id} retrieved ({written} file(s) written).")


async def cmd_scan(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    page_id = parse_page_id_or_url(args.page)
    queued = await crawler.scan_page(page_id)
    await finish(crawler, settings, f"scan page {page_id}")
    print(f"Scan complete: {queued} child page(s) queued.")
    if queued:
        print("Run 'sync' to download the queued child pages.")


async def cmd_pull(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    if not args.dry_run:
        root_service.reconcile_root_md(crawler)
    options = PullOptions(
        folder=args.folder,
        since=args.since,
        max_pages=args.max_pages,
        all=args.all,
        dry_run=args.dry_run,
    )
    result = await pull(crawler, options)
    if not args.dry_run:
        await finish(crawler, settings, "pull")

    print("Pull Results:")
    print(f"  Cutoff time:   {format_rfc3339(result.cutoff)}")
    print(f"  Pages found:   {result.pages_found}")
    print(f"  Pages queued:  {result.pages_queued}")
    if args.all:
        print(f"    - New pages:     {result.new_pages}")
        print(f"    - Updated pages: {result.updated_pages}")
    print(f"  Pages skipped: {result.pages_skipped}")
    if result.early_stopped:
        print("  Stopped at the oldest result of the previous pull")
    if args.dry_run:
        print("\nDry run - no changes were made")
    else:
        print("\nPages have been queued. Run 'sync' to download them.")


async def cmd_sync(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    crawler.store.pull()
    root_service.reconcile_root_md(crawler)
    options = ProcessOptions(
        folder=args.folder,
        max_pages=args.max_pages,
        max_files=args.max_files,
        max_queue_files=args.max_queue_files,
        max_time=args.max_time,
    )
    result = await run_sync(crawler, settings, options)
    print("Sync Results:")
    print(f"  Pages processed:      {result.pages_processed}")
    print(f"  Pages skipped:        {result.pages_skipped}")
    print(f"  Pages dropped:        {result.pages_dropped}")
    print(f"  Files written:        {result.files_written}")
    print(f"  Queue files handled:  {result.queue_files_processed}")
    print(f"  Duration:             {format_duration(result.duration)}")
    if result.stop_reason:
        print(f"  Stopped early:        {result.stop_reason}")


def _print_nodes(nodes: list[PageNode], indent: int) -> None:
    for node in nodes:
        flags = [
            flag
            for flag, on in (("root", node.is_root), ("orphaned", node.is_orphaned))
            if on
        ]
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{'  ' * indent}- {node.title or node.id} ({node.path or 'not synced'}){suffix}")
        _print_nodes(node.children, indent + 1)


async def cmd_list(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    listings = list_service.list_folders(crawler, args.folder, tree=args.tree)
    if not listings:
        print("No folders found. Add entries to root.md to configure root pages.")
        return
    for listing in listings:
        orphaned = f", {listing.orphaned_pages} orphaned" if listing.orphaned_pages else ""
        print(
            f"{listing.name} ({listing.root_pages} root pages, "
            f"{listing.total_pages} total pages{orphaned})"
        )
        _print_nodes(listing.pages, 1)


async def cmd_status(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    info = list_service.status(crawler, args.folder)
    print("Notion Sync Status")
    print()
    if not info.folders:
        print("No folders found. Add entries to root.md to configure root pages.")
        return
    print(f"Folders: {len(info.folders)} ({', '.join(info.folders)})")
    print(f"Total pages: {info.total_pages}")
    print(f"Root pages: {info.total_root_pages}")
    print(f"Last pull: {format_rfc3339(info.last_pull_time) or 'never'}")
    print()
    if info.queue:
        print(f"Queue: {info.queued_pages} page(s) across {len(info.queue)} queue file(s)")
        for folder_status in info.folders.values():
            if folder_status.queued_pages:
                print(f"    - {folder_status.name}: {folder_status.queued_pages} page(s)")
        print("\nNext sync will process:")
        for item in info.queue:
            print(f"  - {item.filename}: {item.page_count} page(s) ({item.folder}, {item.type})")
    else:
        print("Queue: empty")
    print("\nLast sync:")
    for folder_status in info.folders.values():
        print(f"  {folder_status.name}: {format_rfc3339(folder_status.last_synced) or 'never'}")


async def cmd_reindex(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    result = reindex_service.reindex(crawler, dry_run=args.dry_run)
    if not args.dry_run:
        await finish(crawler, settings, "reindex")
    print("Reindex Results:")
    print(f"  Files scanned:        {result.files_scanned}")
    print(f"  Registries written:   {result.registries_written}")
    print(f"  Registries removed:   {result.registries_deleted}")
    print(f"  Duplicates removed:   {result.duplicates_removed}")
    if args.dry_run:
        print("\nDry run - no changes were made")


async def cmd_cleanup(crawler: Crawler, settings: Settings, args: argparse.Namespace) -> None:
    result = cleanup_service.cleanup(crawler, dry_run=args.dry_run)
    if not args.dry_run and result.orphaned:
        await finish(crawler, settings, "cleanup orphaned pages")
    print("Cleanup Results:")
    print(f"  Orphaned pages found: {len(result.orphaned)}")
    if args.dry_run:
        for page_id in result.orphaned:
            print(f"    - {page_id}")
        print("\nDry run - no changes were made")
    else:
        print(f"  Registries deleted:   {result.deleted_registries}")
        print(f"  Files deleted:        {result.deleted_files}")


def show_remote(settings: Settings) -> None:
    print("Remote Git Configuration")
    print()
    mode = settings.effective_storage_mode()
    auto = " (auto-detected)" if not settings.storage else ""
    print(f"Storage:  {mode.value}{auto}")
    if not settings.remote_enabled():
        if settings.git_url:
            print(f"URL:      {redact_url(settings.git_url)} (ignored, storage is local)")
        else:
            print("\nRemote: not configured (set NTN_GIT_URL to enable)")
        return
    print(f"URL:      {redact_url(settings.git_url)}")
    if settings.is_ssh_url():
        print("Auth:     SSH (using ssh-agent)")
    elif settings.git_pass:
        print("Auth:     HTTPS (token configured)")
    else:
        print("Auth:     HTTPS (WARNING: NTN_GIT_PASS not set)")
    print(f"Branch:   {settings.git_branch}")
    if settings.metadata_branch:
        print(f"Metadata: {settings.metadata_branch}")
    print(f"User:     {settings.git_user}")
    print(f"Email:    {settings.git_email}")
    period = format_duration(settings.effective_commit_period())
    print(f"Commit:   {settings.commit_enabled()} (period {period})")
    print(f"Push:     {settings.push_enabled()}")


def check_remote(settings: Settings) -> None:
    if not settings.remote_enabled():
        msg = "remote not configured: set NTN_GIT_URL"
        raise NtnsyncError(msg)
    print(f"Testing connection to {redact_url(settings.git_url)}...")
    open_store(settings).test_connection()
    print("Connection successful!")


def serve(settings: Settings, args: argparse.Namespace) -> None:
    import uvicorn

    from ntnsync.main import create_app

    updates: dict[str, object] = {}
    if args.port is not None:
        updates["webhook_port"] = args.port
    if args.secret is not None:
        updates["webhook_secret"] = args.secret
    if args.path is not None:
        updates["webhook_path"] = args.path
    if args.no_auto_sync:
        updates["webhook_auto_sync"] = False
    if args.sync_delay is not None:
        updates["webhook_sync_delay"] = args.sync_delay
    settings = settings.model_copy(update=updates)
    if not settings.webhook_secret:
        logger.warning("No webhook secret configured, signatures will not be verified")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.webhook_port, log_config=None)


COMMANDS: dict[str, Command] = {
    "add": cmd_add,
    "get": cmd_get,
    "scan": cmd_scan,
    "pull": cmd_pull,
    "sync": cmd_sync,
    "list": cmd_list,
    "status": cmd_status,
    "reindex": cmd_reindex,
    "cleanup": cmd_cleanup,
}


# ── Wiring ───────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ntnsync",
        description="Synchronize Notion content to a git repository",
    )
    parser.add_argument(
        "--store-path", "-s", help="Path to the git repository (default: NTN_DIR or notion)"
    )
    parser.add_argument("--token", help="Notion API token (default: NOTION_TOKEN)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--version", action="version", version=f"ntnsync {VERSION} ({COMMIT}, {BUILD_TIME})"
    )

    sub = parser.add_subparsers(dest="command")

    add = sub.add_parser("add", help="Add a root page to root.md")
    add.add_argument("page", help="Page id or URL")
    add.add_argument("--folder", "-f", required=True, help="Folder for the root's pages")
    add.add_argument("--disabled", action="store_true", help="Add the root unchecked")

    get = sub.add_parser("get", help="Fetch a single page into its place in the hierarchy")
    get.add_argument("page", help="Page id or URL")
    get.add_argument("--folder", "-f", default="", help="Folder (default: from the parent chain)")

    scan = sub.add_parser("scan", help="Queue the untracked child pages of a synced page")
    scan.add_argument("page", help="Page id or URL")

    pull_parser = sub.add_parser("pull", help="Queue pages changed since the last pull")
    pull_parser.add_argument("--folder", "-f", default="", help="Only queue pages in this folder")
    pull_parser.add_argument(
        "--since", type=parse_duration, default=None, help="Look back this far (e.g. 24h, 7d)"
    )
    pull_parser.add_argument(
        "--max-pages", "-n", type=int, default=0, help="Maximum pages to queue"
    )
    pull_parser.add_argument(
        "--all", action="store_true", help="Also queue untracked pages under enabled roots"
    )
    pull_parser.add_argument(
        "--dry-run", action="store_true", help="Preview without changing anything"
    )

    sync = sub.add_parser("sync", help="Process the queue")
    sync.add_argument("--folder", "-f", default="", help="Only process records of this folder")
    sync.add_argument("--max-pages", type=int, default=0, help="Maximum pages to fetch")
    sync.add_argument("--max-files", type=int, default=0, help="Maximum markdown files to write")
    sync.add_argument(
        "--max-time", type=parse_duration, default=timedelta(0), help="Maximum run time (e.g. 30s, 2m)"
    )
    sync.add_argument(
        "--max-queue-files", type=int, default=0, help="Maximum queue records to process"
    )

    list_parser = sub.add_parser("list", help="List folders and their pages")
    list_parser.add_argument("--folder", "-f", default="", help="Only list this folder")
    list_parser.add_argument("--tree", action="store_true", help="Show pages as a tree")

    status_parser = sub.add_parser("status", help="Show sync status and queue information")
    status_parser.add_argument("--folder", "-f", default="", help="Only show this folder")

    reindex = sub.add_parser("reindex", help="Rebuild the registries from markdown files")
    reindex.add_argument("--dry-run", action="store_true", help="Preview without changing anything")

    cleanup = sub.add_parser("cleanup", help="Delete pages that no longer trace to an enabled root")
    cleanup.add_argument("--dry-run", action="store_true", help="Preview without deleting anything")

    remote = sub.add_parser("remote", help="Inspect the remote git configuration")
    remote_sub = remote.add_subparsers(dest="remote_command")
    remote_sub.add_parser("show", help="Show the remote configuration")
    remote_sub.add_parser("test", help="Test the connection to the remote")

    serve_parser = sub.add_parser("serve", help="Run the webhook server")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="HTTP port")
    serve_parser.add_argument("--secret", default=None, help="Webhook signing secret")
    serve_parser.add_argument("--path", default=None, help="Webhook endpoint path")
    serve_parser.add_argument(
        "--no-auto-sync", action="store_true", help="Only queue events, do not sync"
    )
    serve_parser.add_argument(
        "--sync-delay", type=parse_duration, default=None, help="Debounce before syncing"
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.store_path:
        overrides["store_path"] = Path(args.store_path)
    if args.token:
        overrides["notion_token"] = args.token
    return Settings(**overrides)


async def run_command(command: Command, settings: Settings, args: argparse.Namespace) -> None:
    client = NotionClient(settings.notion_token)
    crawler = Crawler(client, open_store(settings), settings)
    try:
        await command(crawler, settings, args)
    except BaseException:
        crawler.rollback()
        raise
    finally:
        await crawler.aclose()
        await client.aclose()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    try:
        settings = load_settings(args)
        configure_logging(args.verbose, settings.log_format)
        logger.debug("Using store %s", settings.store_path)
        if args.command in NEEDS_TOKEN and not settings.notion_token:
            msg = "Notion token required: set NOTION_TOKEN or pass --token"
            raise NtnsyncError(msg)

        if args.command == "remote":
            if args.remote_command == "test":
                check_remote(settings)
            else:
                show_remote(settings)
        elif args.command == "serve":
            serve(settings, args)
        else:
            asyncio.run(run_command(COMMANDS[args.command], settings, args))
    except (NtnsyncError, httpx.HTTPError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except subprocess.CalledProcessError as exc:
        print(f"Error: git failed: {(exc.stderr or '').strip() or exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
