"""
Error taxonomy for change-feed consumption.

Setup errors (ConfigError) abort startup, ParseError and TokenError are fatal to
the calling operation, StoreError aborts only the current read attempt, and
MalformedEventError is absorbed by the read loop.
"""

from typing import Optional


class AVFeedError(Exception):
    """Base exception for avfeed errors."""
    pass


class ConfigError(AVFeedError):
    """Missing or placeholder configuration (endpoint, credentials)."""
    pass


class ParseError(AVFeedError):
    """A resource self-link did not have the expected structure."""
    pass


class TokenError(AVFeedError):
    """Continuation token is corrupted or invalid."""
    pass


class TokenMismatchError(TokenError):
    """Continuation token was minted for a different container."""

    def __init__(self, expected_resource_id: str, token_resource_id: str):
        self.expected_resource_id = expected_resource_id
        self.token_resource_id = token_resource_id
        super().__init__(
            f"Continuation token belongs to resource {token_resource_id!r}, "
            f"not {expected_resource_id!r}"
        )


class StoreError(AVFeedError):
    """Transport, auth or throttling failure reported by the document store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class MalformedEventError(AVFeedError):
    """A change record is missing an expected field."""
    pass


class CheckpointError(AVFeedError):
    """Error saving/loading a continuation token checkpoint."""
    pass
