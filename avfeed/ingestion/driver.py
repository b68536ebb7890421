"""
Fail-fast document ingestion.
"""

from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING
import logging

from prometheus_client import Counter

from ..changefeed.errors import StoreError
from ..documents.generator import DocumentGenerator
from ..documents.models import Document
from ..utils.logging import CorrelationContext

if TYPE_CHECKING:
    from ..connectors.base import ChangeFeedStore

logger = logging.getLogger(__name__)

documents_ingested_total = Counter(
    'avfeed_documents_ingested_total',
    'Documents upserted by the ingestion driver',
    ['with_ttl']
)


@dataclass
class IngestionResult:
    """Documents written by one ingestion run, in write order."""
    documents: List[Document] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.documents)


class IngestionDriver:
    """
    Upsert a batch of generated documents.

    Not a retrying pipeline: the first failed upsert propagates and the run
    stops there.
    """

    def __init__(self, store: 'ChangeFeedStore', generator: Optional[DocumentGenerator] = None):
        self.store = store
        self.generator = generator or DocumentGenerator()

    def ingest(self, count: int, ttl_seconds: Optional[int] = None) -> IngestionResult:
        """
        Generate and upsert `count` documents, stamping ttl when given.

        Raises:
            ValueError: If count is negative or ttl_seconds is not positive
            StoreError: On the first failed upsert
        """
        if count < 0:
            raise ValueError("count must be non-negative")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        result = IngestionResult()
        with_ttl = "true" if ttl_seconds is not None else "false"

        with CorrelationContext():
            logger.info(
                f"Ingesting {count} documents",
                extra={"count": count, "ttl_seconds": ttl_seconds}
            )
            for _ in range(count):
                doc = self.generator.generate()
                if ttl_seconds is not None:
                    doc.ttl = ttl_seconds
                try:
                    self.store.upsert(doc, partition_key=doc.id)
                except StoreError as e:
                    logger.error(
                        f"Upsert failed after {result.count} documents: {e}",
                        extra={"item_id": doc.id, "written": result.count}
                    )
                    raise
                result.documents.append(doc)
                documents_ingested_total.labels(with_ttl=with_ttl).inc()
                logger.debug(f"Upserted {doc.id}", extra={"item_id": doc.id, "value": doc.value})

            logger.info("Ingestion done", extra={"written": result.count})
        return result
