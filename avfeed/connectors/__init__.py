"""
Document store connectors.
"""

from .base import ChangeFeedStore, FeedCursor, ContainerHandle, TTL_POLICY_PER_DOCUMENT

__all__ = [
    "ChangeFeedStore",
    "FeedCursor",
    "ContainerHandle",
    "TTL_POLICY_PER_DOCUMENT",
]
