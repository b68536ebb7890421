"""
Azure Cosmos DB connector.
"""

from .store import CosmosChangeFeedStore, CosmosFeedCursor, create_client, store_errors

__all__ = [
    "CosmosChangeFeedStore",
    "CosmosFeedCursor",
    "create_client",
    "store_errors",
]
