"""
Command line entry point.

    python -m avfeed INGEST   # seed documents with a TTL
    python -m avfeed READ     # read all versions and deletes from sequence 0
"""

import argparse
import logging
import sys
import threading
from datetime import timedelta
from typing import List, NoReturn, Optional

from pydantic import ValidationError

from config.settings import Settings, get_settings

from .changefeed.checkpoint_store import TokenCheckpointStore
from .changefeed.classifier import ReportableChange
from .changefeed.errors import AVFeedError, ConfigError
from .changefeed.models import FeedMode
from .changefeed.reader import ChangeFeedReader, FeedReaderConfig
from .changefeed.tokens import mint_start_token
from .connectors.base import ChangeFeedStore, ContainerHandle
from .connectors.cosmos.store import CosmosChangeFeedStore, create_client
from .ingestion.driver import IngestionDriver
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)

USAGE_ERROR = "Please specify INGEST for data ingestion or READ for reading"
MODES = ("INGEST", "READ")
FEED_MODES = {
    "all": FeedMode.ALL_VERSIONS_AND_DELETES,
    "latest": FeedMode.LATEST_VERSION,
}


class _ArgumentParser(argparse.ArgumentParser):
    """Exit with status 1 and the demo's usage message on bad arguments."""

    def error(self, message: str) -> NoReturn:
        print(USAGE_ERROR, file=sys.stderr)
        self.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="avfeed",
        description="Ingest TTL documents or read the all versions and deletes change feed"
    )
    parser.add_argument("mode", nargs="?", help="INGEST or READ (case-insensitive)")
    parser.add_argument("--count", type=int, default=None, help="Documents to ingest")
    parser.add_argument("--ttl", type=int, default=None, help="TTL in seconds for ingested documents")
    parser.add_argument("--no-ttl", action="store_true", help="Ingest documents without a TTL")
    parser.add_argument(
        "--feed-mode",
        choices=sorted(FEED_MODES),
        default="all",
        help="Read all versions and deletes (default) or latest version only"
    )
    parser.add_argument("--from-sequence", type=int, default=None, help="Logical sequence number to start at")
    parser.add_argument("--resume", action="store_true", help="Resume from the saved checkpoint")
    parser.add_argument("--continuous", action="store_true", help="Keep polling until interrupted")
    return parser


def parse_mode(value: Optional[str]) -> str:
    mode = (value or "").upper()
    if mode not in MODES:
        print(USAGE_ERROR, file=sys.stderr)
        sys.exit(1)
    return mode


def print_change(change: ReportableChange) -> None:
    print(change.describe())


def provision(store: ChangeFeedStore, settings: Settings) -> ContainerHandle:
    return store.ensure_container(
        settings.cosmos.resolved_container_name,
        partition_key_path=settings.cosmos.partition_key_path,
        full_fidelity_retention=timedelta(minutes=settings.feed.retention_minutes),
    )


def run_ingest(store: ChangeFeedStore, settings: Settings, args: argparse.Namespace) -> int:
    count = args.count if args.count is not None else settings.feed.docs_to_add
    ttl = None
    if not args.no_ttl:
        ttl = args.ttl if args.ttl is not None else settings.feed.ttl_seconds
    result = IngestionDriver(store).ingest(count, ttl_seconds=ttl)
    print(f"Ingested {result.count} documents")
    return 0


def run_read(
    store: ChangeFeedStore,
    handle: ContainerHandle,
    settings: Settings,
    args: argparse.Namespace
) -> int:
    checkpoint_store = None
    if settings.checkpoint.enabled or args.resume:
        checkpoint_store = TokenCheckpointStore(settings.checkpoint.url)

    feed_id = settings.feed.feed_id
    if args.resume and checkpoint_store.load_checkpoint(feed_id) is None:
        known = checkpoint_store.list_feeds()
        print(
            f"No checkpoint saved for feed {feed_id}; reading from now. "
            f"Saved feeds: {', '.join(known) if known else 'none'}"
        )

    start_token = None
    if not args.resume:
        sequence = args.from_sequence if args.from_sequence is not None else settings.feed.starting_sequence
        # Start at the beginning of the retention window (sequence 0 by default)
        start_token = mint_start_token(handle.resource_id, sequence)

    reader = ChangeFeedReader(
        store,
        FEED_MODES[args.feed_mode],
        start_token=start_token,
        config=FeedReaderConfig(
            page_size_hint=settings.feed.page_size_hint,
            poll_interval=settings.feed.poll_interval,
        ),
        reporter=print_change,
        checkpoint_store=checkpoint_store,
        feed_id=feed_id,
        resource_id=handle.resource_id,
    )

    print(f"Reading collection in {reader.mode.value} mode")
    try:
        if args.continuous:
            print("Reading until interrupted (Ctrl+C to stop).")
            total = reader.run(stop_event=threading.Event())
        else:
            total = reader.read_once().count
            # The cycle always ends on a not-modified page
            print("No more changes")
        print(f"Found a total of {total} changes")
    finally:
        if checkpoint_store is not None:
            checkpoint_store.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    mode = parse_mode(args.mode)

    try:
        settings = get_settings()
        configure_logging(getattr(logging, settings.log_level), json_format=settings.log_json)
        settings.validate_credentials()

        with create_client(settings.cosmos) as client:
            store = CosmosChangeFeedStore(client, settings.cosmos.database_name)
            handle = provision(store, settings)
            if mode == "INGEST":
                return run_ingest(store, settings, args)
            return run_read(store, handle, settings, args)

    except (ConfigError, ValidationError) as e:
        print(str(e), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Invalid argument: {e}", file=sys.stderr)
        return 1
    except AVFeedError as e:
        logger.error(f"{type(e).__name__}: {e}", extra={"error_type": type(e).__name__})
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        print("End of demo.")
