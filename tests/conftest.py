"""Shared fixtures: in-memory change feed stores."""

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import pytest

from avfeed.changefeed.errors import StoreError
from avfeed.changefeed.models import FeedMode, FeedPage, FeedStatus
from avfeed.changefeed.tokens import mint_start_token, parse_token
from avfeed.connectors.base import ChangeFeedStore, FeedCursor, ContainerHandle, TTL_POLICY_PER_DOCUMENT
from avfeed.documents.models import Document

CONTAINER_RID = "pLJdAOlEdgA="
DATABASE_RID = "pLJdAA=="


class InMemoryCursor(FeedCursor):
    """Reads the store's mutation log; positions are log offsets."""

    def __init__(self, store: "InMemoryFeedStore", mode: FeedMode, position: int, page_size_hint: int):
        self.store = store
        self.mode = mode
        self.position = position
        self.page_size_hint = page_size_hint
        self.fetches = 0

    @property
    def token(self) -> Optional[str]:
        return mint_start_token(self.store.resource_id, self.position)

    def fetch_next(self) -> FeedPage:
        self.fetches += 1
        if self.store.fail_next_fetch:
            self.store.fail_next_fetch = False
            raise StoreError("Request rate is large", status_code=429)

        entries = self.store.log[self.position:self.position + self.page_size_hint]
        if not entries:
            return FeedPage(status=FeedStatus.NOT_MODIFIED, next_token=self.token)

        self.position += len(entries)
        if self.mode == FeedMode.LATEST_VERSION:
            records = tuple(e["current"] for e in entries if e["metadata"]["operationType"] != "delete")
        else:
            records = tuple(entries)
        return FeedPage(status=FeedStatus.OK, records=records, next_token=self.token)


class InMemoryFeedStore(ChangeFeedStore):
    """
    Document store keeping a full-fidelity mutation log.

    TTL expiry is driven explicitly with expire_ttl(), which deletes every
    document that carries a ttl and logs a TTL delete for it.
    """

    def __init__(self, resource_id: str = CONTAINER_RID):
        self.resource_id = resource_id
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.log: List[Dict[str, Any]] = []
        self.upserts: List[str] = []
        self.cursors: List[InMemoryCursor] = []
        self.fail_next_fetch = False
        self.fail_upsert_at: Optional[int] = None
        self.containers: List[Dict[str, Any]] = []

    def ensure_container(
        self,
        name: str,
        partition_key_path: str = "/id",
        ttl_policy: str = TTL_POLICY_PER_DOCUMENT,
        full_fidelity_retention: timedelta = timedelta(minutes=10)
    ) -> ContainerHandle:
        self.containers.append({
            "name": name,
            "partition_key_path": partition_key_path,
            "ttl_policy": ttl_policy,
            "retention": full_fidelity_retention,
        })
        return ContainerHandle(
            name=name,
            self_link=f"dbs/{DATABASE_RID}/colls/{self.resource_id}/",
            resource_id=self.resource_id,
        )

    def upsert(self, doc: Document, partition_key: str) -> None:
        if self.fail_upsert_at is not None and len(self.upserts) == self.fail_upsert_at:
            raise StoreError("Service unavailable", status_code=503)
        body = doc.to_store()
        previous = self.documents.get(doc.id)
        operation = "replace" if previous else "create"
        self.documents[doc.id] = body
        self.upserts.append(doc.id)
        self._append(operation, current=body, previous=previous)

    def delete(self, doc_id: str, ttl_expired: bool = False) -> None:
        previous = self.documents.pop(doc_id)
        self._append("delete", current=None, previous=previous, ttl_expired=ttl_expired)

    def expire_ttl(self) -> int:
        expiring = [doc_id for doc_id, body in self.documents.items() if body.get("ttl")]
        for doc_id in expiring:
            self.delete(doc_id, ttl_expired=True)
        return len(expiring)

    def _append(self, operation: str, current, previous, ttl_expired: bool = False) -> None:
        metadata: Dict[str, Any] = {"operationType": operation, "lsn": len(self.log) + 1}
        if operation == "delete":
            metadata["timeToLiveExpired"] = ttl_expired
        record: Dict[str, Any] = {"metadata": metadata}
        if current is not None:
            record["current"] = dict(current, _lsn=len(self.log) + 1)
        if previous is not None:
            record["previous"] = dict(previous)
        self.log.append(record)

    def open_cursor(self, mode: FeedMode, start: Optional[str] = None, page_size_hint: int = 10) -> InMemoryCursor:
        if start is None:
            position = len(self.log)
        else:
            state = parse_token(start)
            if state.resource_id != self.resource_id:
                raise StoreError("Continuation token is not valid for this container", status_code=400)
            position = int(json.loads(state.ranges[0].value))
        cursor = InMemoryCursor(self, mode, position, page_size_hint)
        self.cursors.append(cursor)
        return cursor


class ScriptedCursor(FeedCursor):
    """Replays a fixed list of pages (or exceptions), then NOT_MODIFIED forever."""

    def __init__(self, pages: Sequence[Any], start: Optional[str]):
        self.pages = list(pages)
        self._token = start
        self.fetches = 0

    @property
    def token(self) -> Optional[str]:
        return self._token

    def fetch_next(self) -> FeedPage:
        self.fetches += 1
        if not self.pages:
            return FeedPage(status=FeedStatus.NOT_MODIFIED, next_token=self._token)
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        if page.next_token:
            self._token = page.next_token
        return page


class ScriptedStore(ChangeFeedStore):
    """Store whose cursors replay scripted pages; records open_cursor calls."""

    def __init__(self, pages: Sequence[Any] = ()):
        self.pages = list(pages)
        self.opened: List[Dict[str, Any]] = []
        self.cursors: List[ScriptedCursor] = []

    def open_cursor(self, mode: FeedMode, start: Optional[str] = None, page_size_hint: int = 10) -> ScriptedCursor:
        self.opened.append({"mode": mode, "start": start, "page_size_hint": page_size_hint})
        cursor = ScriptedCursor(self.pages, start)
        self.pages = []
        self.cursors.append(cursor)
        return cursor

    def upsert(self, doc: Document, partition_key: str) -> None:
        raise NotImplementedError

    def ensure_container(self, name, partition_key_path="/id", ttl_policy=TTL_POLICY_PER_DOCUMENT,
                         full_fidelity_retention=timedelta(minutes=10)) -> ContainerHandle:
        raise NotImplementedError


def ok_page(records: Sequence[Dict[str, Any]], token: str) -> FeedPage:
    return FeedPage(status=FeedStatus.OK, records=tuple(records), next_token=token)


def change_record(op: str, doc_id: str, value: float, ttl_expired: Optional[bool] = None) -> Dict[str, Any]:
    """Build an all-versions-and-deletes record."""
    metadata: Dict[str, Any] = {"operationType": op}
    if ttl_expired is not None:
        metadata["timeToLiveExpired"] = ttl_expired
    record: Dict[str, Any] = {"metadata": metadata}
    if op == "delete":
        record["previous"] = {"id": doc_id, "value": value}
    else:
        record["current"] = {"id": doc_id, "value": value}
    return record


@pytest.fixture
def feed_store():
    """In-memory store with a full-fidelity log."""
    return InMemoryFeedStore()


@pytest.fixture
def scripted_store():
    """Factory for stores replaying scripted pages."""
    return ScriptedStore
