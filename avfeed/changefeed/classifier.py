"""
Change event classification.

Decides the operation kind of each change, whether a delete came from TTL
expiry, and which snapshot (previous or current) describes it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
import logging

from prometheus_client import Counter

from ..documents.models import Document
from .errors import MalformedEventError
from .models import ChangeEvent, OperationType

logger = logging.getLogger(__name__)

malformed_events_total = Counter(
    'avfeed_malformed_events_total',
    'Change records that could not be classified'
)


class ChangeKind(str, Enum):
    """Classified change kind."""
    CREATE = "create"
    REPLACE = "replace"
    UPSERT = "create/replace"  # latest-version records carry no operation
    DELETE = "delete"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReportableChange:
    """A classified change ready to report."""
    kind: ChangeKind
    label: str
    snapshot: str  # "current" or "previous"
    document: Optional[Document] = None
    ttl_expired: bool = False

    @property
    def document_id(self) -> Optional[str]:
        return self.document.id if self.document else None

    def describe(self) -> str:
        """Render the console line for this change."""
        item_id = self.document.id if self.document else ""
        value = self.document.display_value if self.document else ""
        return (
            f"Operation: {self.label}. Item id: {item_id}. "
            f"{self.snapshot.capitalize()} value: {value}"
        )


def classify(event: ChangeEvent) -> ReportableChange:
    """
    Classify one change event.

    | operation      | ttl expired | snapshot | label                   |
    |----------------|-------------|----------|-------------------------|
    | create/replace | n/a         | current  | create / replace        |
    | delete         | true        | previous | delete (due to TTL)     |
    | delete         | false       | previous | delete (not due to TTL) |

    A missing snapshot is reported as None.
    """
    metadata = event.metadata
    if metadata is None:
        return ReportableChange(
            kind=ChangeKind.UPSERT,
            label=ChangeKind.UPSERT.value,
            snapshot="current",
            document=event.current,
        )

    if metadata.operation_type == OperationType.DELETE:
        if metadata.time_to_live_expired:
            label = "delete (due to TTL)"
        else:
            label = "delete (not due to TTL)"
        return ReportableChange(
            kind=ChangeKind.DELETE,
            label=label,
            snapshot="previous",
            document=event.previous,
            ttl_expired=metadata.time_to_live_expired,
        )

    kind = ChangeKind(metadata.operation_type.value)
    return ReportableChange(
        kind=kind,
        label=kind.value,
        snapshot="current",
        document=event.current,
    )


def classify_record(record: Any) -> ReportableChange:
    """
    Parse and classify a raw feed record.

    Malformed records never raise; they come back as an UNKNOWN change with an
    empty snapshot so the read loop keeps going.
    """
    try:
        event = ChangeEvent.from_record(record)
    except MalformedEventError as e:
        malformed_events_total.inc()
        logger.warning(
            f"Malformed change record: {e}",
            extra={"error": str(e)}
        )
        return ReportableChange(
            kind=ChangeKind.UNKNOWN,
            label=ChangeKind.UNKNOWN.value,
            snapshot="current",
        )
    return classify(event)
