#!/usr/bin/env python3
"""
Document storage for the autopilot engine.

Supports:
- In-memory backend for local runs and tests
- Redis backend (redis.asyncio) with WATCH/MULTI compare-and-set
- Optimistic read-compute-conditional-write via update_with_retry()

Every stored document carries a monotonically increasing "_version".
A version of 0 means "document does not exist", so compare_and_set(...,
expected_version=0, ...) is a create-if-absent.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis_asyncio
from redis.exceptions import WatchError

from autopilot.config import get_conflict_retry_policy, get_redis_url, get_state_backend
from autopilot.errors import ConflictError, NotFoundError
from autopilot.retry import RetryPolicy, retry_async


logger = logging.getLogger("store")

VERSION_FIELD = "_version"
ID_FIELD = "_id"


def _matches(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        value = doc.get(key)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _order(docs: List[Dict[str, Any]], order_by: Optional[str], descending: bool,
           limit: Optional[int]) -> List[Dict[str, Any]]:
    if order_by:
        docs.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by) if d.get(order_by) is not None else 0),
                  reverse=descending)
    if limit is not None:
        docs = docs[:limit]
    return docs


class PersistentStore(ABC):
    """Collection/document store used by every engine component."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document (including _version) or None."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Unconditionally overwrite a document. Returns the stored copy."""

    @abstractmethod
    async def compare_and_set(self, collection: str, doc_id: str, expected_version: int,
                              data: Dict[str, Any]) -> bool:
        """Write data only if the stored version equals expected_version."""

    @abstractmethod
    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None, descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return documents whose fields equal filters (list values mean 'in')."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    async def close(self) -> None:
        return None

    async def add(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a new document and return its id."""
        doc_id = doc_id or uuid.uuid4().hex
        if not await self.compare_and_set(collection, doc_id, 0, data):
            raise ConflictError(f"{collection}/{doc_id} already exists")
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge fields into an existing document."""
        def merge(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc.update(fields)
            return doc
        return await update_with_retry(self, collection, doc_id, merge)

    async def increment(self, collection: str, doc_id: str, field: str, amount: float = 1) -> float:
        """Atomically add amount to a numeric field, creating the document if needed."""
        policy = RetryPolicy(max_retries=20, base_delay=0.001, max_delay=0.05)

        async def attempt() -> float:
            current = await self.get(collection, doc_id)
            version = current.get(VERSION_FIELD, 0) if current else 0
            doc = current or {}
            value = (doc.get(field) or 0) + amount
            doc[field] = value
            if not await self.compare_and_set(collection, doc_id, version, doc):
                raise ConflictError(f"increment lost race on {collection}/{doc_id}")
            return value

        return await retry_async(attempt, policy, (ConflictError,), operation_name=f"increment {collection}/{doc_id}")


class InMemoryStore(PersistentStore):
    """Process-local store guarded by a single asyncio.Lock per instance."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._bucket(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            bucket = self._bucket(collection)
            version = bucket.get(doc_id, {}).get(VERSION_FIELD, 0)
            doc = copy.deepcopy(data)
            doc[ID_FIELD] = doc_id
            doc[VERSION_FIELD] = version + 1
            bucket[doc_id] = doc
            return copy.deepcopy(doc)

    async def compare_and_set(self, collection: str, doc_id: str, expected_version: int,
                              data: Dict[str, Any]) -> bool:
        async with self._lock:
            bucket = self._bucket(collection)
            current = bucket.get(doc_id)
            version = current.get(VERSION_FIELD, 0) if current else 0
            if version != expected_version:
                return False
            doc = copy.deepcopy(data)
            doc[ID_FIELD] = doc_id
            doc[VERSION_FIELD] = version + 1
            bucket[doc_id] = doc
            return True

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None, descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = [copy.deepcopy(d) for d in self._bucket(collection).values() if _matches(d, filters)]
        return _order(docs, order_by, descending, limit)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            return self._bucket(collection).pop(doc_id, None) is not None


class RedisStore(PersistentStore):
    """
    Redis-backed store.

    Key convention:
    - {prefix}:{collection}:{doc_id}   JSON document
    - {prefix}:{collection}:_ids       set of document ids
    """

    def __init__(self, client: Any = None, url: Optional[str] = None, prefix: str = "autopilot"):
        if client is None:
            if not url:
                raise ValueError("RedisStore requires a client or a REDIS_URL")
            client = redis_asyncio.Redis.from_url(url, decode_responses=True)
        self._client = client
        self.prefix = prefix

    def _key(self, *parts: str) -> str:
        pieces = [self.prefix]
        pieces.extend([str(p).strip(":") for p in parts if p])
        return ":".join(pieces)

    def _index_key(self, collection: str) -> str:
        return self._key(collection, "_ids")

    @staticmethod
    def _decode(raw: Any) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        return json.loads(raw)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self._client.get(self._key(collection, doc_id)))

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        while True:
            current = await self.get(collection, doc_id)
            version = current.get(VERSION_FIELD, 0) if current else 0
            if await self.compare_and_set(collection, doc_id, version, data):
                doc = dict(data)
                doc[ID_FIELD] = doc_id
                doc[VERSION_FIELD] = version + 1
                return doc

    async def compare_and_set(self, collection: str, doc_id: str, expected_version: int,
                              data: Dict[str, Any]) -> bool:
        key = self._key(collection, doc_id)
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                version = current.get(VERSION_FIELD, 0) if current else 0
                if version != expected_version:
                    await pipe.unwatch()
                    return False
                doc = dict(data)
                doc[ID_FIELD] = doc_id
                doc[VERSION_FIELD] = version + 1
                pipe.multi()
                pipe.set(key, json.dumps(doc, ensure_ascii=False, default=str))
                pipe.sadd(self._index_key(collection), doc_id)
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("CAS lost race on key=%s", key)
                return False

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None, descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ids = sorted(await self._client.smembers(self._index_key(collection)))
        if not ids:
            return []
        raws = await self._client.mget([self._key(collection, doc_id) for doc_id in ids])
        docs = [doc for doc in (self._decode(raw) for raw in raws) if doc and _matches(doc, filters)]
        return _order(docs, order_by, descending, limit)

    async def delete(self, collection: str, doc_id: str) -> bool:
        removed = await self._client.delete(self._key(collection, doc_id))
        await self._client.srem(self._index_key(collection), doc_id)
        return bool(removed)

    async def close(self) -> None:
        await self._client.aclose()


async def update_with_retry(
    store: PersistentStore,
    collection: str,
    doc_id: str,
    mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
    policy: Optional[RetryPolicy] = None,
) -> Dict[str, Any]:
    """
    Optimistic read-compute-conditional-write.

    mutate() receives a fresh copy of the document and returns the new
    document, or None to leave it unchanged. It is re-run on every conflict,
    so it must not have side effects.

    Raises:
        NotFoundError: document does not exist
        ConflictError: concurrent writers won every attempt
    """
    if policy is None:
        policy = get_conflict_retry_policy()

    async def attempt() -> Dict[str, Any]:
        current = await store.get(collection, doc_id)
        if current is None:
            raise NotFoundError(collection, doc_id)
        version = current.get(VERSION_FIELD, 0)
        updated = mutate(copy.deepcopy(current))
        if updated is None:
            return current
        if not await store.compare_and_set(collection, doc_id, version, updated):
            raise ConflictError(
                f"Concurrent update on {collection}/{doc_id}",
                context={"collection": collection, "doc_id": doc_id},
            )
        updated = dict(updated)
        updated[ID_FIELD] = doc_id
        updated[VERSION_FIELD] = version + 1
        return updated

    return await retry_async(attempt, policy, (ConflictError,),
                             operation_name=f"update {collection}/{doc_id}")


def create_store(backend: Optional[str] = None, redis_url: Optional[str] = None) -> PersistentStore:
    """Build the store named by AUTOPILOT_STATE_BACKEND ('memory' or 'redis')."""
    backend = (backend or get_state_backend()).lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "redis":
        return RedisStore(url=redis_url or get_redis_url())
    raise ValueError(f"Unknown state backend: {backend}")
