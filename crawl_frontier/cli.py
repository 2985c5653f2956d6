"""Minimal CLI entrypoint for crawl-frontier."""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

from core.config import FairnessPolicy, load_config
from core.counters import CrawlCounters
from core.metadata import Metadata
from core.models import FetchOutcome
from core.structured_logging import emit_json_event
from crawl_frontier import __version__
from fetcher.http import HttpFetchClient
from fetcher.robots import RobotsCache
from frontier.buffer import URLFrontier
from frontier.dispatch import DEPTH_KEY, Dispatcher
from frontier.puller import StatusStorePuller
from frontier.scheduler import StatusUpdater
from indexing.bulk import JsonlBulkSink
from parser.links import HtmlLinkExtractor
from quality.urlnorm import normalize_url, origin_key
from storage.sqlite import SQLiteStatusStore


def _resolve_command_run_id(args: argparse.Namespace) -> str:
    """Resolve run_id from CLI args or create one for command-level tracing."""
    explicit = getattr(args, "run_id", None)
    if explicit:
        return str(explicit)
    return str(uuid4())


def _emit_cli_event(
    event_type: str,
    *,
    run_id: str,
    command: str,
    **payload: Any,
) -> str:
    """Emit one structured CLI event line with standard fields."""
    return emit_json_event(
        event_type=event_type,
        run_id=run_id,
        command=command,
        **payload,
    )


def _cmd_inject(args: argparse.Namespace) -> int:
    """Seed the status store with URLs due immediately."""
    run_id = args.run_id or str(uuid4())
    config = load_config(args.config)
    store = SQLiteStatusStore(args.db)
    updater = StatusUpdater.from_config(config)
    now = datetime.now(UTC)

    injected = 0
    skipped: list[str] = []
    for raw_url in args.urls:
        url = normalize_url(raw_url)
        origin = origin_key(url)
        if not origin or not url.startswith(("http://", "https://")):
            skipped.append(raw_url)
            continue
        record = updater.apply(
            None,
            url,
            FetchOutcome.DISCOVERED,
            now,
            Metadata({DEPTH_KEY: ["0"]}),
            origin,
        )
        if store.insert_if_absent(record):
            injected += 1
        else:
            skipped.append(raw_url)

    _emit_cli_event(
        "cli_inject_completed",
        run_id=run_id,
        command="inject",
        db=str(args.db),
        injected=injected,
        skipped=skipped,
    )
    return 0


def _cmd_crawl(args: argparse.Namespace) -> int:
    """Drain due URLs from the status store through the frontier."""
    run_id = args.run_id or str(uuid4())
    config = load_config(args.config)
    if args.policy:
        config = config.model_copy(update={"fairness_policy": FairnessPolicy(args.policy)})

    store = SQLiteStatusStore(args.db)
    counters = CrawlCounters()
    fetch_client = HttpFetchClient(user_agent=config.user_agent)
    frontier = URLFrontier.from_config(config, run_id=run_id)
    robots = RobotsCache.from_config(config, fetch_client, run_id=run_id)
    puller = StatusStorePuller.from_config(
        config,
        store,
        frontier,
        counters=counters,
        run_id=run_id,
    )
    sink = JsonlBulkSink(args.index_output) if args.index_output else None
    dispatcher = Dispatcher.from_config(
        config,
        frontier,
        fetch_client,
        store,
        robots=robots,
        link_extractor=HtmlLinkExtractor(),
        puller=puller,
        sink=sink,
        counters=counters,
        fetch_log_sink=store.save_fetch_log,
        run_id=run_id,
    )

    try:
        if args.workers > 1:
            processed = dispatcher.run_workers(args.workers, max_iterations=args.max_iterations)
        else:
            processed = dispatcher.run(max_iterations=args.max_iterations)
    finally:
        if dispatcher.indexer is not None:
            dispatcher.indexer.close()
        fetch_client.close()

    _emit_cli_event(
        "cli_crawl_completed",
        run_id=run_id,
        command="crawl",
        db=str(args.db),
        processed=processed,
        frontier=frontier.stats(),
        counters=counters.snapshot(),
        index_output=str(args.index_output) if args.index_output else None,
    )
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    """Print the schedule record of one URL."""
    run_id = args.run_id or str(uuid4())
    db_path = Path(args.db)
    if not db_path.exists():
        raise FileNotFoundError(f"Database file not found: {db_path}")

    store = SQLiteStatusStore(db_path, initialize=False)
    url = normalize_url(args.url)
    record = store.get(url)
    _emit_cli_event(
        "cli_status_completed",
        run_id=run_id,
        command="status",
        db=str(db_path),
        url=url,
        found=record is not None,
        record=record.model_dump(mode="json") if record is not None else None,
        totals=store.count_by_status(),
    )
    return 0 if record is not None else 1


def build_parser() -> argparse.ArgumentParser:
    """Create argument parser for the crawl-frontier CLI."""
    parser = argparse.ArgumentParser(
        prog="crawl-frontier",
        description="Polite, fair crawl frontier backed by a SQLite status store",
    )
    parser.add_argument("--version", action="version", version=f"crawl-frontier {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    inject_parser = subparsers.add_parser(
        "inject",
        help="Add seed URLs to the status store",
    )
    inject_parser.add_argument("urls", nargs="+", help="Seed URLs")
    inject_parser.add_argument("--db", default="crawl.db", help="SQLite DB path")
    inject_parser.add_argument("--config", help="Optional JSON config file")
    inject_parser.add_argument("--run-id", help="Optional explicit run ID for logging")
    inject_parser.set_defaults(func=_cmd_inject)

    crawl_parser = subparsers.add_parser(
        "crawl",
        help="Fetch due URLs until the frontier is idle",
    )
    crawl_parser.add_argument("--db", default="crawl.db", help="SQLite DB path")
    crawl_parser.add_argument("--config", help="Optional JSON config file")
    crawl_parser.add_argument("--run-id", help="Optional explicit run ID")
    crawl_parser.add_argument("--max-iterations", type=int, default=None, help="Stop after N URLs")
    crawl_parser.add_argument("--workers", type=int, default=1, help="Number of dispatch threads")
    crawl_parser.add_argument(
        "--policy",
        choices=["simple", "priority"],
        help="Override the configured fairness policy",
    )
    crawl_parser.add_argument("--index-output", help="Write fetched documents to this JSONL file")
    crawl_parser.set_defaults(func=_cmd_crawl)

    status_parser = subparsers.add_parser(
        "status",
        help="Show the stored schedule record of a URL",
    )
    status_parser.add_argument("url", help="URL to look up")
    status_parser.add_argument("--db", default="crawl.db", help="SQLite DB path")
    status_parser.add_argument("--run-id", help="Optional explicit run ID for logging")
    status_parser.set_defaults(func=_cmd_status)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Execute CLI and return process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    try:
        return int(args.func(args))
    except Exception as exc:
        run_id = _resolve_command_run_id(args)
        _emit_cli_event(
            "cli_error",
            run_id=run_id,
            command=str(getattr(args, "command", "unknown")),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return 1


def cli() -> None:
    """Console-script entrypoint."""
    raise SystemExit(main())


if __name__ == "__main__":
    raise SystemExit(main())
