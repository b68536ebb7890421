"""
Document store collaborator interface.

The change-feed core only talks to a store through these operations, so any
backend (the Cosmos DB adapter, an in-memory fake in tests) can drive it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..changefeed.models import FeedMode, FeedPage
from ..documents.models import Document

TTL_POLICY_PER_DOCUMENT = "per-document"


@dataclass(frozen=True)
class ContainerHandle:
    """Provisioned container identity."""
    name: str
    self_link: str
    resource_id: str


class FeedCursor(ABC):
    """Page-at-a-time cursor over one change feed."""

    @abstractmethod
    def fetch_next(self) -> FeedPage:
        """Fetch the next page. Returns NOT_MODIFIED when caught up."""

    @property
    @abstractmethod
    def token(self) -> Optional[str]:
        """Token the next fetch will resume from."""


class ChangeFeedStore(ABC):
    """Operations the feed core needs from a document store."""

    @abstractmethod
    def open_cursor(
        self,
        mode: FeedMode,
        start: Optional[str] = None,
        page_size_hint: int = 10
    ) -> FeedCursor:
        """Open a cursor at a continuation token, or at 'now' when start is None."""

    @abstractmethod
    def upsert(self, doc: Document, partition_key: str) -> None:
        """Insert or fully replace a document."""

    @abstractmethod
    def ensure_container(
        self,
        name: str,
        partition_key_path: str = "/id",
        ttl_policy: str = TTL_POLICY_PER_DOCUMENT,
        full_fidelity_retention: timedelta = timedelta(minutes=10)
    ) -> ContainerHandle:
        """Create the database/container if missing and return its handle."""
