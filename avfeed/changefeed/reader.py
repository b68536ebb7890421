"""
Change feed reader.

Drives a store cursor through the poll cycle:

    IDLE -> FETCHING_PAGE -> DRAINING -> IDLE -> ... -> EXHAUSTED

- Every record of a page is classified and reported, in page order, before the
  page's token becomes the saved position
- A NOT_MODIFIED page ends the cycle ("caught up"); nothing is re-fetched
  until the next cycle
- Continuous mode waits poll_interval between cycles and checks its stop
  signal only between cycles, never mid-page
- Store errors abort the cycle and leave the saved token at the last fully
  drained page
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TYPE_CHECKING
import logging
import signal
import threading
import time

from prometheus_client import Counter, Histogram

from ..utils.logging import CorrelationContext
from .classifier import ReportableChange, classify_record
from .errors import StoreError, CheckpointError
from .models import FeedMode, FeedPage
from .tokens import ensure_token_for, is_composite_token

if TYPE_CHECKING:
    from ..connectors.base import ChangeFeedStore, FeedCursor
    from .checkpoint_store import TokenCheckpointStore

logger = logging.getLogger(__name__)

feed_events_total = Counter(
    'avfeed_events_total',
    'Change events reported',
    ['feed', 'operation']
)

feed_pages_total = Counter(
    'avfeed_pages_total',
    'Change feed pages fetched',
    ['feed', 'status']
)

feed_store_errors_total = Counter(
    'avfeed_store_errors_total',
    'Store errors while reading the change feed',
    ['feed']
)

feed_poll_duration = Histogram(
    'avfeed_poll_seconds',
    'Time spent in one poll cycle',
    ['feed']
)

Reporter = Callable[[ReportableChange], None]


class ReaderState(str, Enum):
    """Reader state machine states."""
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    DRAINING = "draining"
    EXHAUSTED = "exhausted"


@dataclass
class FeedReaderConfig:
    """Configuration for the change feed reader."""
    page_size_hint: int = 10  # Hint only; the store may return more or fewer
    poll_interval: float = 5.0  # Seconds between continuous-mode cycles

    def __post_init__(self):
        """Validate configuration values."""
        if self.page_size_hint <= 0:
            raise ValueError("page_size_hint must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll cycle."""
    count: int
    pages: int
    token: Optional[str]
    exhausted: bool


def log_reporter(change: ReportableChange) -> None:
    logger.info(change.describe(), extra={"operation": change.kind.value, "item_id": change.document_id})


class ChangeFeedReader:
    """
    Read a change feed page by page and report every change.

    Thread Safety: NOT thread-safe. Use one instance per cursor; independent
    readers may share a store.

    Example:
        >>> token = mint_start_token(handle.resource_id, 0)
        >>> reader = ChangeFeedReader(store, FeedMode.ALL_VERSIONS_AND_DELETES, token)
        >>> result = reader.read_once()
    """

    def __init__(
        self,
        store: 'ChangeFeedStore',
        mode: FeedMode,
        start_token: Optional[str] = None,
        config: Optional[FeedReaderConfig] = None,
        reporter: Optional[Reporter] = None,
        checkpoint_store: Optional['TokenCheckpointStore'] = None,
        feed_id: str = "default",
        resource_id: Optional[str] = None
    ):
        """
        Args:
            store: Document store exposing open_cursor
            mode: Feed mode to read in
            start_token: Position to start from. Falls back to the checkpoint
                store, then to "now"
            config: Reader configuration
            reporter: Called with each classified change, in feed order
            checkpoint_store: Optional persistence for the post-page token
            feed_id: Checkpoint key for this reader
            resource_id: Container resource id; when given, composite start
                tokens minted for another container are rejected

        Raises:
            TokenMismatchError: If start_token belongs to another container
        """
        self.store = store
        self.mode = mode
        self.config = config or FeedReaderConfig()
        self.reporter = reporter or log_reporter
        self.checkpoint_store = checkpoint_store
        self.feed_id = feed_id
        self.resource_id = resource_id

        self.state = ReaderState.IDLE
        self.events_processed = 0
        self.token = start_token
        self._stop_event: Optional[threading.Event] = None
        self._original_sigterm = None
        self._original_sigint = None

        if self.token is None and self.checkpoint_store is not None:
            self.token = self.checkpoint_store.load_checkpoint(self.feed_id)
            if self.token:
                logger.info(
                    f"Resuming feed {self.feed_id} from checkpoint",
                    extra={"feed_id": self.feed_id}
                )

        if self.token and self.resource_id and is_composite_token(self.token):
            ensure_token_for(self.token, self.resource_id)

        logger.info(
            f"Initialized ChangeFeedReader for feed {self.feed_id}",
            extra={
                "feed_id": self.feed_id,
                "mode": self.mode.value,
                "page_size_hint": self.config.page_size_hint,
                "has_start_token": self.token is not None
            }
        )

    def poll(self) -> PollResult:
        """
        Run one poll cycle: fetch and drain pages until the store is caught up.

        Returns:
            PollResult with the number of changes reported this cycle

        Raises:
            StoreError: If a fetch fails; self.token keeps the last drained position
        """
        count = 0
        pages = 0
        start = time.time()
        cursor = self.store.open_cursor(self.mode, self.token, self.config.page_size_hint)

        with CorrelationContext():
            while True:
                page = self._fetch(cursor)
                if page.not_modified:
                    self.state = ReaderState.EXHAUSTED
                    if page.next_token:
                        self.token = page.next_token
                    break

                pages += 1
                count += self._drain(page)
                self._advance(page)

        feed_poll_duration.labels(feed=self.feed_id).observe(time.time() - start)
        logger.debug(
            f"Poll cycle finished with {count} changes",
            extra={"feed_id": self.feed_id, "count": count, "pages": pages}
        )
        return PollResult(count=count, pages=pages, token=self.token, exhausted=True)

    def read_once(self) -> PollResult:
        """Single-shot read: one poll cycle, then stop."""
        logger.info(
            f"Reading in {self.mode.value} mode",
            extra={"feed_id": self.feed_id, "mode": self.mode.value}
        )
        result = self.poll()
        logger.info(
            f"Found a total of {result.count} changes",
            extra={"feed_id": self.feed_id, "count": result.count, "pages": result.pages}
        )
        return result

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
        install_signal_handlers: bool = True
    ) -> int:
        """
        Continuous read: poll, wait poll_interval, repeat until stopped.

        Args:
            stop_event: Set to stop after the current cycle
            max_cycles: Stop after this many cycles
            install_signal_handlers: Stop on SIGTERM/SIGINT while running

        Returns:
            Total changes reported across all cycles
        """
        self._stop_event = stop_event or threading.Event()
        if install_signal_handlers:
            self._setup_signal_handlers()

        total = 0
        cycles = 0
        logger.info(
            f"Reading in {self.mode.value} mode until stopped",
            extra={"feed_id": self.feed_id, "poll_interval": self.config.poll_interval}
        )
        try:
            while not self._stop_event.is_set():
                result = self.poll()
                total += result.count
                cycles += 1
                logger.info("No more changes", extra={"feed_id": self.feed_id, "count": result.count})
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._stop_event.wait(self.config.poll_interval)
                if not self._stop_event.is_set():
                    self.state = ReaderState.IDLE
        finally:
            if install_signal_handlers:
                self._restore_signal_handlers()

        logger.info(
            f"Found a total of {total} changes",
            extra={"feed_id": self.feed_id, "count": total, "cycles": cycles}
        )
        return total

    def stop(self) -> None:
        """Stop continuous reading after the current cycle."""
        logger.info(f"Stopping change feed reader {self.feed_id}", extra={"feed_id": self.feed_id})
        if self._stop_event is not None:
            self._stop_event.set()

    def _fetch(self, cursor: 'FeedCursor') -> FeedPage:
        self.state = ReaderState.FETCHING_PAGE
        try:
            page = cursor.fetch_next()
        except StoreError as e:
            self.state = ReaderState.IDLE
            feed_store_errors_total.labels(feed=self.feed_id).inc()
            logger.error(
                f"Change feed fetch failed: {e}",
                extra={"feed_id": self.feed_id, "status_code": e.status_code}
            )
            raise
        feed_pages_total.labels(feed=self.feed_id, status=page.status.value).inc()
        return page

    def _drain(self, page: FeedPage) -> int:
        self.state = ReaderState.DRAINING
        for record in page.records:
            change = classify_record(record)
            self.reporter(change)
            feed_events_total.labels(feed=self.feed_id, operation=change.kind.value).inc()
        return len(page.records)

    def _advance(self, page: FeedPage) -> None:
        """Save the page's token; only called once the page is fully drained."""
        self.events_processed += len(page.records)
        if page.next_token:
            self.token = page.next_token
            if self.checkpoint_store is not None:
                try:
                    self.checkpoint_store.save_checkpoint(
                        self.feed_id, self.token, events_processed=self.events_processed
                    )
                except CheckpointError as e:
                    # The in-memory position is still correct
                    logger.error(
                        f"Failed to save checkpoint: {e}",
                        extra={"feed_id": self.feed_id}
                    )
        self.state = ReaderState.IDLE

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}", extra={"feed_id": self.feed_id})
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
            self._original_sigterm = None
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None


def capture_current_token(
    store: 'ChangeFeedStore',
    mode: FeedMode,
    page_size_hint: int = 10
) -> Optional[str]:
    """
    Return a token for the feed's current end, skipping existing changes.

    Opens a cursor at "now" and fetches until the store reports NOT_MODIFIED.
    """
    cursor = store.open_cursor(mode, None, page_size_hint)
    while True:
        page = cursor.fetch_next()
        if page.not_modified:
            return page.next_token or cursor.token
