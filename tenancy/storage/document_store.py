"""
Schemaless document storage with Redis and in-memory backends.

This module provides the storage contract the tenancy engine runs on:
- Per-call atomic insert/get/patch/delete of JSON documents
- Equality lookups narrowed by declared single-field indexes
- No cascades and no foreign keys (callers enforce referential integrity)

Two backends are provided: an in-memory store for tests and single-process
use, and a Redis-backed store for durability.
"""

import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from tenancy.types.organization import utc_now

logger = logging.getLogger(__name__)


# Indexed fields per table. Lookups on other fields scan the table.
TABLE_INDEXES: Dict[str, Tuple[str, ...]] = {
    "organizations": ("slug", "owner_id", "status"),
    "members": ("organization_id", "user_id"),
    "teams": ("organization_id", "parent_team_id", "slug"),
    "team_members": ("team_id", "user_id"),
    "invitations": ("organization_id", "identifier", "status"),
    "audit_logs": ("scope_key", "user_id", "action"),
}


class DocumentNotFoundError(Exception):
    """Raised when patching a document that does not exist."""

    def __init__(self, table: str, doc_id: str):
        self.table = table
        self.doc_id = doc_id
        super().__init__(f"Document {doc_id} not found in {table}")


def _index_value(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _matches(doc: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
    return all(doc.get(field) == value for field, value in criteria.items())


def _sort_key(doc: Dict[str, Any]) -> Tuple[str, str]:
    return (str(doc.get("created_at") or ""), str(doc.get("id")))


class DocumentStore(ABC):
    """
    Abstract document store.

    Documents are plain JSON-compatible dicts. ``insert`` assigns ``id`` and,
    when absent, ``created_at``.
    """

    def __init__(self, indexes: Optional[Dict[str, Tuple[str, ...]]] = None):
        self.indexes = indexes if indexes is not None else TABLE_INDEXES

    def _indexed_fields(self, table: str) -> Tuple[str, ...]:
        return self.indexes.get(table, ())

    @staticmethod
    def _new_document(fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(fields)
        doc["id"] = doc.get("id") or uuid.uuid4().hex
        doc.setdefault("created_at", utc_now().isoformat())
        return doc

    @abstractmethod
    async def insert(self, table: str, fields: Dict[str, Any]) -> str:
        """Insert a document and return its id."""

    @abstractmethod
    async def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document by id, or None."""

    @abstractmethod
    async def find(self, table: str, **criteria: Any) -> List[Dict[str, Any]]:
        """All documents whose fields equal ``criteria``, oldest first."""

    @abstractmethod
    async def patch(self, table: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """
        Shallow-merge ``fields`` into a document.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """

    @abstractmethod
    async def delete(self, table: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""

    async def find_one(self, table: str, **criteria: Any) -> Optional[Dict[str, Any]]:
        """First document matching ``criteria``, or None."""
        docs = await self.find(table, **criteria)
        return docs[0] if docs else None

    async def count(self, table: str, **criteria: Any) -> int:
        return len(await self.find(table, **criteria))


# =============================================================================
# In-Memory Backend
# =============================================================================


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local document store.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, indexes: Optional[Dict[str, Tuple[str, ...]]] = None) -> None:
        super().__init__(indexes)
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # table -> field -> encoded value -> ids
        self._index_sets: Dict[str, Dict[str, Dict[str, Set[str]]]] = {}

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _index_add(self, table: str, doc: Dict[str, Any]) -> None:
        table_idx = self._index_sets.setdefault(table, {})
        for field in self._indexed_fields(table):
            key = _index_value(doc.get(field))
            table_idx.setdefault(field, {}).setdefault(key, set()).add(doc["id"])

    def _index_remove(self, table: str, doc: Dict[str, Any]) -> None:
        table_idx = self._index_sets.get(table, {})
        for field in self._indexed_fields(table):
            key = _index_value(doc.get(field))
            ids = table_idx.get(field, {}).get(key)
            if ids is not None:
                ids.discard(doc["id"])

    def _candidates(self, table: str, criteria: Dict[str, Any]) -> Iterable[str]:
        rows = self._table(table)
        for field in self._indexed_fields(table):
            if field in criteria:
                ids = self._index_sets.get(table, {}).get(field, {}).get(
                    _index_value(criteria[field]), set()
                )
                # Keep insertion order
                return [doc_id for doc_id in rows if doc_id in ids]
        return list(rows)

    async def insert(self, table: str, fields: Dict[str, Any]) -> str:
        doc = self._new_document(copy.deepcopy(fields))
        self._table(table)[doc["id"]] = doc
        self._index_add(table, doc)
        logger.debug(f"Inserted {table}/{doc['id']} into in-memory storage")
        return doc["id"]

    async def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._table(table).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, table: str, **criteria: Any) -> List[Dict[str, Any]]:
        rows = self._table(table)
        return [
            copy.deepcopy(rows[doc_id])
            for doc_id in self._candidates(table, criteria)
            if _matches(rows[doc_id], criteria)
        ]

    async def patch(self, table: str, doc_id: str, fields: Dict[str, Any]) -> None:
        doc = self._table(table).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(table, doc_id)
        self._index_remove(table, doc)
        doc.update(copy.deepcopy(fields))
        doc["id"] = doc_id
        self._index_add(table, doc)

    async def delete(self, table: str, doc_id: str) -> None:
        doc = self._table(table).pop(doc_id, None)
        if doc is not None:
            self._index_remove(table, doc)


# =============================================================================
# Redis Backend
# =============================================================================


class RedisDocumentStore(DocumentStore):
    """
    Redis-backed document store.

    Layout:
    - ``{prefix}{table}:doc:{id}`` holds the JSON document
    - ``{prefix}{table}:ids`` is the set of ids in the table
    - ``{prefix}{table}:idx:{field}:{value}`` is the set of ids per index value
    """

    def __init__(
        self,
        client: Any,
        key_prefix: str = "tenancy:",
        indexes: Optional[Dict[str, Tuple[str, ...]]] = None,
    ) -> None:
        super().__init__(indexes)
        self.redis = client
        self.key_prefix = key_prefix

    def _doc_key(self, table: str, doc_id: str) -> str:
        return f"{self.key_prefix}{table}:doc:{doc_id}"

    def _ids_key(self, table: str) -> str:
        return f"{self.key_prefix}{table}:ids"

    def _index_key(self, table: str, field: str, value: Any) -> str:
        return f"{self.key_prefix}{table}:idx:{field}:{_index_value(value)}"

    async def _index_add(self, table: str, doc: Dict[str, Any]) -> None:
        for field in self._indexed_fields(table):
            await self.redis.sadd(self._index_key(table, field, doc.get(field)), doc["id"])

    async def _index_remove(self, table: str, doc: Dict[str, Any]) -> None:
        for field in self._indexed_fields(table):
            await self.redis.srem(self._index_key(table, field, doc.get(field)), doc["id"])

    async def insert(self, table: str, fields: Dict[str, Any]) -> str:
        doc = self._new_document(fields)
        await self.redis.set(self._doc_key(table, doc["id"]), json.dumps(doc, default=str))
        await self.redis.sadd(self._ids_key(table), doc["id"])
        await self._index_add(table, doc)
        logger.debug(f"Inserted {table}/{doc['id']} into Redis")
        return doc["id"]

    async def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = await self.redis.get(self._doc_key(table, doc_id))
        return json.loads(data) if data else None

    async def find(self, table: str, **criteria: Any) -> List[Dict[str, Any]]:
        ids_key = self._ids_key(table)
        for field in self._indexed_fields(table):
            if field in criteria:
                ids_key = self._index_key(table, field, criteria[field])
                break

        ids = sorted(await self.redis.smembers(ids_key))
        if not ids:
            return []

        raw = await self.redis.mget([self._doc_key(table, doc_id) for doc_id in ids])
        docs = [json.loads(data) for data in raw if data]
        return sorted((d for d in docs if _matches(d, criteria)), key=_sort_key)

    async def patch(self, table: str, doc_id: str, fields: Dict[str, Any]) -> None:
        doc = await self.get(table, doc_id)
        if doc is None:
            raise DocumentNotFoundError(table, doc_id)
        await self._index_remove(table, doc)
        doc.update(fields)
        doc["id"] = doc_id
        await self.redis.set(self._doc_key(table, doc_id), json.dumps(doc, default=str))
        await self._index_add(table, doc)

    async def delete(self, table: str, doc_id: str) -> None:
        doc = await self.get(table, doc_id)
        if doc is None:
            return
        await self._index_remove(table, doc)
        await self.redis.srem(self._ids_key(table), doc_id)
        await self.redis.delete(self._doc_key(table, doc_id))


# =============================================================================
# Factory
# =============================================================================


async def create_document_store(redis_client: Optional[Any] = None) -> DocumentStore:
    """
    Build the configured document store.

    Uses Redis when a client can be obtained, otherwise falls back to the
    in-memory store for the lifetime of the process.

    Args:
        redis_client: Optional ``RedisClient``; built from settings when omitted.

    Returns:
        A ready document store.
    """
    from tenancy.config import get_settings
    from tenancy.storage.redis_client import RedisClient

    settings = get_settings()
    if redis_client is None and not settings.is_redis_configured:
        logger.info("Redis not configured, using in-memory document store")
        return InMemoryDocumentStore()

    holder = redis_client or RedisClient(settings.redis.redis_url)
    client = await holder.get_client()
    if client is None:
        logger.warning("Redis unavailable, falling back to in-memory document store")
        return InMemoryDocumentStore()

    logger.info("Using Redis document store")
    return RedisDocumentStore(client, key_prefix=settings.redis.redis_key_prefix)
