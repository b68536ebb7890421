"""
Change feed consumption: continuation tokens, classification and the reader.
"""

from .errors import (
    AVFeedError, ConfigError, ParseError, TokenError, TokenMismatchError,
    StoreError, MalformedEventError, CheckpointError
)
from .models import FeedMode, FeedStatus, OperationType, ChangeMetadata, ChangeEvent, FeedPage
from .tokens import mint_start_token, extract_resource_id, parse_token, ensure_token_for
from .classifier import ChangeKind, ReportableChange, classify, classify_record
from .reader import ChangeFeedReader, FeedReaderConfig, ReaderState, PollResult, capture_current_token
from .checkpoint_store import TokenCheckpointStore, FeedCheckpoint

__all__ = [
    "AVFeedError",
    "ConfigError",
    "ParseError",
    "TokenError",
    "TokenMismatchError",
    "StoreError",
    "MalformedEventError",
    "CheckpointError",
    "FeedMode",
    "FeedStatus",
    "OperationType",
    "ChangeMetadata",
    "ChangeEvent",
    "FeedPage",
    "mint_start_token",
    "extract_resource_id",
    "parse_token",
    "ensure_token_for",
    "ChangeKind",
    "ReportableChange",
    "classify",
    "classify_record",
    "ChangeFeedReader",
    "FeedReaderConfig",
    "ReaderState",
    "PollResult",
    "capture_current_token",
    "TokenCheckpointStore",
    "FeedCheckpoint",
]
