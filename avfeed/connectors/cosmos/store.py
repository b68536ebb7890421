"""
Azure Cosmos DB change-feed store.

Wraps the azure-cosmos SDK behind the ChangeFeedStore interface:
- Provisions database/container with per-document TTL and full fidelity retention
- Upserts documents partitioned by id
- Reads the change feed one page per fetch in either feed mode
- Converts SDK failures to StoreError (the SDK's own retry policy applies first)
"""

import base64
import json
from contextlib import contextmanager
from datetime import timedelta
from typing import Optional, Dict, Any, Iterator, List
import logging

from azure.core.exceptions import AzureError
from azure.cosmos import CosmosClient, PartitionKey
from azure.cosmos.container import ContainerProxy
from azure.cosmos.exceptions import CosmosHttpResponseError

from ...changefeed.errors import StoreError, TokenError, TokenMismatchError
from ...changefeed.models import FeedMode, FeedPage, FeedStatus
from ...changefeed.tokens import extract_resource_id, is_composite_token, parse_token
from ...documents.models import Document
from ..base import ChangeFeedStore, FeedCursor, ContainerHandle, TTL_POLICY_PER_DOCUMENT

logger = logging.getLogger(__name__)

START_NOW = "Now"


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Re-raise SDK exceptions as StoreError, keeping the HTTP status."""
    try:
        yield
    except CosmosHttpResponseError as e:
        logger.error(
            f"Cosmos DB {operation} failed with status {e.status_code}",
            extra={"operation": operation, "status_code": e.status_code}
        )
        raise StoreError(f"{operation} failed: {e.message}", status_code=e.status_code) from e
    except AzureError as e:
        logger.error(
            f"Cosmos DB {operation} failed: {e}",
            extra={"operation": operation, "error_type": type(e).__name__}
        )
        raise StoreError(f"{operation} failed: {e}") from e


def _sdk_range(min_value: str, max_value: str) -> Dict[str, Any]:
    return {"min": min_value, "max": max_value, "isMinInclusive": True, "isMaxInclusive": False}


def sdk_continuation(token: str, mode: FeedMode) -> str:
    """
    Re-encode a composite V2 token as the SDK's change feed state.

    The SDK only accepts its own base64 JSON state as `continuation`. Minted
    tokens are read from the positions they carry; tokens the SDK issued are
    returned unchanged.

    Raises:
        TokenError: If a composite token carries no ranges
    """
    if not is_composite_token(token):
        return token

    state = parse_token(token)
    if not state.ranges:
        raise TokenError("Continuation token has no feed ranges")

    children: List[Dict[str, Any]] = [
        {"token": feed_range.value, "range": _sdk_range(feed_range.min, feed_range.max)}
        for feed_range in state.ranges
    ]
    composite = {
        "v": "v2",
        "rid": state.resource_id,
        "continuation": children,
        "Range": _sdk_range(state.ranges[0].min, state.ranges[-1].max),
    }
    change_feed_state = {
        "v": "v2",
        "containerRid": state.resource_id,
        "mode": mode.value,
        "startFrom": {"Type": "Beginning"},
        "continuation": composite,
    }
    encoded = json.dumps(change_feed_state, separators=(",", ":"))
    return base64.b64encode(encoded.encode("utf-8")).decode("ascii")


def _check_token_container(token: str, resource_id: Optional[str]) -> None:
    if resource_id is None or not is_composite_token(token):
        return
    found = parse_token(token).resource_id
    if found != resource_id:
        raise TokenMismatchError(resource_id, found)


def create_client(cosmos_settings: Any) -> CosmosClient:
    """Build a CosmosClient from CosmosSettings. Use it as a context manager."""
    return CosmosClient(
        cosmos_settings.endpoint_url,
        credential=cosmos_settings.authorization_key,
        connection_mode=cosmos_settings.connection_mode,
    )


class CosmosFeedCursor(FeedCursor):
    """
    Change feed cursor over one container.

    Each fetch issues a fresh query from the cursor's current token and takes
    exactly one page, so the cursor holds no SDK iterator between fetches.

    Thread Safety: NOT thread-safe. One cursor per reader.
    """

    def __init__(
        self,
        container: ContainerProxy,
        mode: FeedMode,
        start: Optional[str],
        page_size_hint: int,
        resource_id: Optional[str] = None
    ):
        self._container = container
        self._mode = mode
        self._token = start
        self._page_size_hint = page_size_hint
        self._resource_id = resource_id

    @property
    def token(self) -> Optional[str]:
        return self._token

    def fetch_next(self) -> FeedPage:
        """
        Fetch one page from the current token.

        Raises:
            TokenMismatchError: If a composite token belongs to another container
            TokenError: If the SDK rejects the continuation token
            StoreError: On SDK transport or service failures
        """
        query_kwargs: Dict[str, Any] = {
            "max_item_count": self._page_size_hint,
            "mode": self._mode.value,
        }
        if self._token:
            _check_token_container(self._token, self._resource_id)
            query_kwargs["continuation"] = sdk_continuation(self._token, self._mode)
        else:
            query_kwargs["start_time"] = START_NOW

        try:
            with store_errors("read change feed"):
                response = self._container.query_items_change_feed(**query_kwargs)
                pager = response.by_page()
                page = next(pager, None)
                records = tuple(page) if page is not None else ()
                next_token = self._next_token(pager)
        except ValueError as e:
            # The SDK decodes the continuation lazily, on the first page
            logger.error(
                f"Continuation token rejected by the SDK: {e}",
                extra={"mode": self._mode.value, "error_type": type(e).__name__}
            )
            raise TokenError(f"Continuation token rejected: {e}") from e

        self._token = next_token
        status = FeedStatus.OK if records else FeedStatus.NOT_MODIFIED

        logger.debug(
            f"Fetched change feed page with {len(records)} records",
            extra={"mode": self._mode.value, "records": len(records), "status": status.value}
        )
        return FeedPage(status=status, records=records, next_token=next_token)

    def _next_token(self, pager: Any) -> Optional[str]:
        token = getattr(pager, "continuation_token", None)
        if isinstance(token, str) and token:
            return token
        # Older SDKs only surface the position through the etag header
        headers = self._container.client_connection.last_response_headers or {}
        etag = headers.get("etag")
        if isinstance(etag, str) and etag:
            return etag
        return self._token


class CosmosChangeFeedStore(ChangeFeedStore):
    """
    Cosmos DB implementation of ChangeFeedStore.

    The CosmosClient is safe to share between cursors.

    Example:
        >>> with create_client(settings.cosmos) as client:
        ...     store = CosmosChangeFeedStore(client, settings.cosmos.database_name)
        >>> handle = store.ensure_container(settings.cosmos.resolved_container_name)
        >>> cursor = store.open_cursor(FeedMode.ALL_VERSIONS_AND_DELETES, token)
    """

    def __init__(self, client: CosmosClient, database_name: str):
        self.client = client
        self.database_name = database_name
        self._container: Optional[ContainerProxy] = None
        self.resource_id: Optional[str] = None

    @property
    def container(self) -> ContainerProxy:
        if self._container is None:
            raise StoreError("Container not provisioned; call ensure_container first")
        return self._container

    def ensure_container(
        self,
        name: str,
        partition_key_path: str = "/id",
        ttl_policy: str = TTL_POLICY_PER_DOCUMENT,
        full_fidelity_retention: timedelta = timedelta(minutes=10)
    ) -> ContainerHandle:
        if ttl_policy != TTL_POLICY_PER_DOCUMENT:
            raise ValueError(f"Unsupported ttl_policy {ttl_policy!r}")

        retention_minutes = int(full_fidelity_retention.total_seconds() // 60)
        logger.info(
            f"Getting container reference for {name}",
            extra={
                "database": self.database_name,
                "container": name,
                "retention_minutes": retention_minutes
            }
        )

        with store_errors("provision container"):
            database = self.client.create_database_if_not_exists(id=self.database_name)
            container = database.create_container_if_not_exists(
                id=name,
                partition_key=PartitionKey(path=partition_key_path),
                default_ttl=-1,  # honour each document's ttl property
                change_feed_policy={"retentionDuration": retention_minutes},
            )
            properties = container.read()

        self._container = container
        self_link = properties["_self"]
        self.resource_id = extract_resource_id(self_link)
        return ContainerHandle(
            name=name,
            self_link=self_link,
            resource_id=self.resource_id,
        )

    def upsert(self, doc: Document, partition_key: str) -> None:
        if partition_key != doc.id:
            raise ValueError("Documents are partitioned by their own id")
        with store_errors("upsert"):
            self.container.upsert_item(body=doc.to_store())

    def open_cursor(
        self,
        mode: FeedMode,
        start: Optional[str] = None,
        page_size_hint: int = 10
    ) -> CosmosFeedCursor:
        return CosmosFeedCursor(self.container, mode, start, page_size_hint, resource_id=self.resource_id)
