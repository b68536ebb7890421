"""
Change-feed records, pages and read modes.
"""

from typing import Optional, Any, Tuple
from enum import Enum
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..documents.models import Document
from .errors import MalformedEventError

logger = logging.getLogger(__name__)

ENVELOPE_KEYS = ("current", "previous", "metadata")


class FeedMode(str, Enum):
    """Change feed read mode (values are the store's mode names)."""
    LATEST_VERSION = "LatestVersion"
    ALL_VERSIONS_AND_DELETES = "AllVersionsAndDeletes"


class FeedStatus(str, Enum):
    """Outcome of a single page fetch."""
    OK = "ok"
    NOT_MODIFIED = "not_modified"


class OperationType(str, Enum):
    """Mutation kind reported in all-versions-and-deletes metadata."""
    CREATE = "create"
    REPLACE = "replace"
    DELETE = "delete"


class ChangeMetadata(BaseModel):
    """Per-change metadata; time_to_live_expired only matters for deletes."""
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    operation_type: OperationType = Field(..., alias="operationType")
    time_to_live_expired: bool = Field(default=False, alias="timeToLiveExpired")


class ChangeEvent(BaseModel):
    """
    One mutation observed in the feed.

    Records read in latest-version mode are bare documents and carry no
    metadata; they surface as a current snapshot only.
    """
    model_config = ConfigDict(frozen=True)

    current: Optional[Document] = None
    previous: Optional[Document] = None
    metadata: Optional[ChangeMetadata] = None

    @classmethod
    def from_record(cls, record: Any) -> "ChangeEvent":
        """
        Build an event from a raw feed record.

        Snapshots that fail validation are dropped to None. Missing or invalid
        metadata on an envelope record raises MalformedEventError.

        Raises:
            MalformedEventError: If the record or its metadata is unusable
        """
        if not isinstance(record, dict):
            raise MalformedEventError(f"Change record must be an object, got {type(record).__name__}")

        if not any(key in record for key in ENVELOPE_KEYS):
            return cls(current=_snapshot(record, "current"))

        raw_metadata = record.get("metadata")
        if not isinstance(raw_metadata, dict):
            raise MalformedEventError("Change record has no metadata")

        try:
            metadata = ChangeMetadata.model_validate(
                {**raw_metadata, "operationType": str(raw_metadata.get("operationType", "")).lower()}
            )
        except ValidationError as e:
            raise MalformedEventError(f"Invalid change metadata: {e.errors()[0]['msg']}") from e

        return cls(
            current=_snapshot(record.get("current"), "current"),
            previous=_snapshot(record.get("previous"), "previous"),
            metadata=metadata,
        )


def _snapshot(raw: Any, name: str) -> Optional[Document]:
    if raw is None:
        return None
    try:
        return Document.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            f"Dropping unreadable {name} snapshot",
            extra={"snapshot": name, "errors": e.error_count()}
        )
        return None


class FeedPage(BaseModel):
    """Raw change records in store order plus the token that resumes after them."""
    model_config = ConfigDict(frozen=True)

    status: FeedStatus
    records: Tuple[Any, ...] = ()
    next_token: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status == FeedStatus.NOT_MODIFIED

    def __len__(self) -> int:
        return len(self.records)
