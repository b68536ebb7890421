"""
SQL-backed checkpoint store for change feed continuation tokens.

Any SQLAlchemy URL works; sqlite is the default for local runs.
"""

from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, BigInteger, UniqueConstraint, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from datetime import datetime
from typing import Optional, List
import logging

from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .errors import CheckpointError

logger = logging.getLogger(__name__)

Base = declarative_base()

checkpoint_saves_total = Counter(
    'avfeed_checkpoint_saves_total',
    'Total continuation token saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'avfeed_checkpoint_loads_total',
    'Total continuation token loads',
    ['status']
)


class FeedCheckpoint(Base):
    """
    Saved feed position.

    Stores:
    - feed_id: Reader identifier (one row per cursor)
    - continuation_token: Token to resume from (post-page)
    - events_processed: Total events handed to the reporter
    """
    __tablename__ = "feed_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    feed_id = Column(String(255), nullable=False, index=True)
    continuation_token = Column(Text, nullable=False)
    events_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('feed_id', name='uq_feed_checkpoints_feed_id'),
    )


_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    reraise=True
)


class TokenCheckpointStore:
    """
    Continuation token persistence.

    Thread Safety: YES (session per call)

    Example:
        >>> store = TokenCheckpointStore("sqlite:///avfeed_checkpoints.db")
        >>> store.save_checkpoint("ttl-demo", token, events_processed=100)
        >>> token = store.load_checkpoint("ttl-demo")
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy connection URL

        Raises:
            CheckpointError: If the database cannot be reached
        """
        try:
            self.engine = create_engine(database_url, pool_pre_ping=True, echo=False)
            self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)
            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("TokenCheckpointStore initialized", extra={"url": self.engine.url.render_as_string()})

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize TokenCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    def save_checkpoint(self, feed_id: str, continuation_token: str, events_processed: int = 0) -> None:
        """
        Upsert the checkpoint for a feed.

        Raises:
            CheckpointError: If save fails after retries
        """
        if not continuation_token:
            raise CheckpointError("Refusing to save an empty continuation token")
        try:
            self._save(feed_id, continuation_token, events_processed)
        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"feed_id": feed_id}
            )
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint for feed {feed_id}",
            extra={"feed_id": feed_id, "events_processed": events_processed}
        )

    @_transient_retry
    def _save(self, feed_id: str, continuation_token: str, events_processed: int) -> None:
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(FeedCheckpoint).filter_by(feed_id=feed_id).first()
                if checkpoint:
                    checkpoint.continuation_token = continuation_token
                    checkpoint.events_processed = events_processed
                    checkpoint.updated_at = datetime.utcnow()
                else:
                    session.add(FeedCheckpoint(
                        feed_id=feed_id,
                        continuation_token=continuation_token,
                        events_processed=events_processed
                    ))
        finally:
            session.close()

    def load_checkpoint(self, feed_id: str) -> Optional[str]:
        """
        Load the saved token for a feed.

        Returns:
            Continuation token if one was saved, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            checkpoint = self._load(feed_id)
        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"feed_id": feed_id}
            )
            raise CheckpointError(f"Database error: {e}") from e

        if checkpoint is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(f"No checkpoint found for feed {feed_id}", extra={"feed_id": feed_id})
            return None

        checkpoint_loads_total.labels(status='success').inc()
        return checkpoint

    @_transient_retry
    def _load(self, feed_id: str) -> Optional[str]:
        session: Session = self.SessionLocal()
        try:
            checkpoint = session.query(FeedCheckpoint).filter_by(feed_id=feed_id).first()
            return checkpoint.continuation_token if checkpoint else None
        finally:
            session.close()

    def delete_checkpoint(self, feed_id: str) -> None:
        """Forget a feed's position (next read starts from scratch)."""
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                deleted = session.query(FeedCheckpoint).filter_by(feed_id=feed_id).delete()
            if deleted:
                logger.info(f"Deleted checkpoint for feed {feed_id}", extra={"feed_id": feed_id})
        except SQLAlchemyError as e:
            logger.error(f"Database error deleting checkpoint: {e}", extra={"feed_id": feed_id})
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            session.close()

    def list_feeds(self) -> List[str]:
        """Feed ids that have a saved checkpoint, sorted."""
        session: Session = self.SessionLocal()
        try:
            return [row.feed_id for row in session.query(FeedCheckpoint).order_by(FeedCheckpoint.feed_id)]
        except SQLAlchemyError as e:
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            session.close()

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        logger.info("TokenCheckpointStore connections closed")
