"""
Document Store Backends
====================================
Generic create/read/update/delete access to named collections of
semi-structured documents, keyed by a store-assigned identifier.

Two backends share one contract:

- MemoryStore:   in-process collections (demos, tests, offline runs)
- SupabaseStore: one Supabase table per collection, each document held in a
                 jsonb ``doc`` column next to a server-generated uuid ``id``.
                 Run schema/supabase_schema.sql once before first use.

Every document crossing the store boundary is an independent copy: callers
never alias stored state, and the store never aliases caller state.

Usage:
    store = open_store("memory://local")
    sid = store.create("students", {"name": "John Smith", "studentId": "S1001"})
    store.find_by_id("students", sid)
    store.update("students", sid, {"name": "John Smith-Updated"})
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

__all__ = [
    "DocumentStore",
    "MemoryStore",
    "SupabaseStore",
    "StoreError",
    "StoreUnavailable",
    "InvalidDocument",
    "open_store",
    "ID_FIELD",
]

logger = logging.getLogger(__name__)

ID_FIELD = "id"
MEMORY_SCHEME = "memory://"


# ──────────────────────────────────────────────────────────────────────────────
# ERRORS
# ──────────────────────────────────────────────────────────────────────────────

class StoreError(Exception):
    """Base class for store-level failures."""


class StoreUnavailable(StoreError):
    """The underlying store cannot be reached. Fatal to the current operation."""


class InvalidDocument(StoreError, ValueError):
    """A write the store refuses (caller-supplied id, id change, non-mapping)."""


# ──────────────────────────────────────────────────────────────────────────────
# CONTRACT
# ──────────────────────────────────────────────────────────────────────────────

def _check_new_document(document: dict[str, Any]) -> None:
    if not isinstance(document, dict):
        raise InvalidDocument(f"document must be a mapping, got {type(document).__name__}")
    if ID_FIELD in document:
        raise InvalidDocument(f"'{ID_FIELD}' is assigned by the store and cannot be supplied")


def _check_changes(changes: dict[str, Any]) -> None:
    if not isinstance(changes, dict) or not changes:
        raise InvalidDocument("field changes must be a non-empty mapping")
    if ID_FIELD in changes:
        raise InvalidDocument(f"'{ID_FIELD}' is immutable once assigned")


def _matches(document: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    return all(
        field in document and document[field] == value
        for field, value in where.items()
    )


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class DocumentStore(ABC):
    """Collections of documents keyed by a store-assigned ``id``.

    ``find`` returns documents in insertion order, so ``skip``/``limit``
    give "first N / skip N" semantics. An empty result is an empty list,
    never an exception. No uniqueness beyond ``id`` is enforced.
    """

    @abstractmethod
    def create(self, collection: str, document: dict[str, Any]) -> str:
        """Insert a document and return its new id."""

    @abstractmethod
    def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Documents whose fields equal every ``where`` value."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> bool:
        """Set fields on one document. False when no document has that id."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Remove one document. False when no document has that id."""

    @abstractmethod
    def clear(self, collection: str) -> int:
        """Remove every document in a collection, returning how many."""

    @abstractmethod
    def list_collections(self) -> list[str]:
        """Names of collections that currently exist."""

    @abstractmethod
    def ensure_collection(self, name: str) -> bool:
        """Create a collection if absent. True when it had to be created."""

    def close(self) -> None:
        """Release any connection resources."""

    # ── Derived operations ────────────────────────────────────────────────

    def find_one(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        skip: int = 0,
    ) -> dict[str, Any] | None:
        docs = self.find(collection, where, skip=skip, limit=1)
        return docs[0] if docs else None

    def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self.find_one(collection, {ID_FIELD: doc_id})

    def count(self, collection: str) -> int:
        return len(self.find(collection))

    def collection_exists(self, name: str) -> bool:
        return name in self.list_collections()

    def __enter__(self) -> DocumentStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ──────────────────────────────────────────────────────────────────────────────
# IN-PROCESS BACKEND
# ──────────────────────────────────────────────────────────────────────────────

class MemoryStore(DocumentStore):
    """Dict-backed store. Each operation holds a lock, so each call is atomic.

    Like a schema-less server, writing to a collection that was never
    created creates it implicitly.
    """

    def __init__(self, database: str = "public"):
        self.database = database
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create(self, collection: str, document: dict[str, Any]) -> str:
        _check_new_document(document)
        doc_id = str(uuid.uuid4())
        stored = copy.deepcopy(document)
        stored[ID_FIELD] = doc_id
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = stored
        logger.debug("Created %s/%s", collection, doc_id)
        return doc_id

    def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if skip < 0 or (limit is not None and limit < 0):
            raise ValueError("skip and limit must be >= 0")
        with self._lock:
            docs = self._collections.get(collection, {})
            # Fast path for id lookups
            if where and set(where) == {ID_FIELD}:
                hit = docs.get(where[ID_FIELD])
                matched = [hit] if hit is not None else []
            else:
                matched = [d for d in docs.values() if _matches(d, where)]
            end = None if limit is None else skip + limit
            return copy.deepcopy(matched[skip:end])

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> bool:
        _check_changes(changes)
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(changes))
        logger.debug("Updated %s/%s fields=%s", collection, doc_id, sorted(changes))
        return True

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            removed = self._collections.get(collection, {}).pop(doc_id, None)
        return removed is not None

    def clear(self, collection: str) -> int:
        with self._lock:
            docs = self._collections.get(collection)
            if docs is None:
                return 0
            removed = len(docs)
            docs.clear()
        logger.debug("Cleared %s (%d documents)", collection, removed)
        return removed

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))

    def list_collections(self) -> list[str]:
        with self._lock:
            return list(self._collections)

    def ensure_collection(self, name: str) -> bool:
        with self._lock:
            if name in self._collections:
                return False
            self._collections[name] = {}
        logger.info("Created collection %s", name)
        return True


# ──────────────────────────────────────────────────────────────────────────────
# SUPABASE BACKEND
# ──────────────────────────────────────────────────────────────────────────────

class SupabaseStore(DocumentStore):
    """Supabase/PostgREST backend.

    Each collection is a table ``(id uuid, doc jsonb, created_at timestamptz)``
    created through the ``ensure_collection`` RPC. Field equality filters run
    against ``doc->>field``; ``find`` orders by ``created_at`` so "first" is
    the earliest insert.
    """

    def __init__(self, client: Client, database: str = "public"):
        self.client = client
        self.database = database
        self._db = client.schema(database)

    @staticmethod
    def _to_document(row: dict[str, Any]) -> dict[str, Any]:
        doc = dict(row.get("doc") or {})
        doc[ID_FIELD] = str(row[ID_FIELD])
        return doc

    @staticmethod
    def _filter_column(field: str) -> str:
        return ID_FIELD if field == ID_FIELD else f"doc->>{field}"

    @staticmethod
    def _filter_value(value: Any) -> Any:
        # doc->>field yields text, so compare against the text form
        if isinstance(value, bool):
            return "true" if value else "false"
        return value if isinstance(value, str) else str(value)

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"{action} failed: {e}") from e
        except APIError as e:
            raise StoreError(f"{action} failed: {e.message}") from e

    def create(self, collection: str, document: dict[str, Any]) -> str:
        _check_new_document(document)
        result = self._execute(
            self._db.table(collection).insert({"doc": document}),
            f"insert into {collection}",
        )
        doc_id = str(result.data[0][ID_FIELD])
        logger.debug("Created %s/%s", collection, doc_id)
        return doc_id

    def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if skip < 0 or (limit is not None and limit < 0):
            raise ValueError("skip and limit must be >= 0")
        where = where or {}
        if limit == 0:
            return []
        # The id column is a uuid; any other ref can never match
        if ID_FIELD in where and not _is_uuid(where[ID_FIELD]):
            return []
        query = self._db.table(collection).select("id, doc")
        for field, value in where.items():
            query = query.eq(self._filter_column(field), self._filter_value(value))
        query = query.order("created_at")
        doc_filters = set(where) - {ID_FIELD}
        if not doc_filters:
            if limit is not None:
                query = query.range(skip, skip + limit - 1)
            elif skip:
                query = query.offset(skip)
        result = self._execute(query, f"select from {collection}")
        docs = [self._to_document(row) for row in result.data]
        if not doc_filters:
            return docs
        # doc->>field compares text, which is looser than typed equality, so
        # paging happens only after the typed re-check
        matched = [d for d in docs if _matches(d, where)]
        end = None if limit is None else skip + limit
        return matched[skip:end]

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> bool:
        _check_changes(changes)
        current = self.find_by_id(collection, doc_id)
        if current is None:
            return False
        current.pop(ID_FIELD)
        current.update(changes)
        result = self._execute(
            self._db.table(collection).update({"doc": current}).eq(ID_FIELD, doc_id),
            f"update {collection}",
        )
        logger.debug("Updated %s/%s fields=%s", collection, doc_id, sorted(changes))
        return bool(result.data)

    def delete(self, collection: str, doc_id: str) -> bool:
        if not _is_uuid(doc_id):
            return False
        result = self._execute(
            self._db.table(collection).delete().eq(ID_FIELD, doc_id),
            f"delete from {collection}",
        )
        return bool(result.data)

    def clear(self, collection: str) -> int:
        result = self._execute(
            self._db.table(collection).delete().neq(ID_FIELD, "00000000-0000-0000-0000-000000000000"),
            f"clear {collection}",
        )
        return len(result.data or [])

    def count(self, collection: str) -> int:
        result = self._execute(
            self._db.table(collection).select(ID_FIELD, count="exact").limit(1),
            f"count {collection}",
        )
        return result.count if result.count is not None else len(result.data)

    def list_collections(self) -> list[str]:
        result = self._execute(self._db.rpc("list_collections", {}), "list collections")
        return [row if isinstance(row, str) else row["list_collections"] for row in result.data]

    def ensure_collection(self, name: str) -> bool:
        result = self._execute(
            self._db.rpc("ensure_collection", {"collection_name": name}),
            f"ensure collection {name}",
        )
        created = bool(result.data)
        if created:
            logger.info("Created collection %s", name)
        return created


def open_store(url: str, key: str = "", database: str = "public") -> DocumentStore:
    """Pick a backend from the connection target."""
    if url.startswith(MEMORY_SCHEME):
        logger.info("Using in-memory store (%s)", url)
        return MemoryStore(database)
    if url.startswith(("http://", "https://")):
        if not key:
            raise ValueError("a Supabase API key is required for an http(s) connection target")
        logger.info("Connecting to Supabase at %s (schema %s)", url, database)
        return SupabaseStore(create_client(url, key), database)
    raise ValueError(f"unsupported connection target: {url!r}")
