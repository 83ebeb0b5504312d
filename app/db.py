"""
Document store for posts and security logs.

- Collections of JSON documents with filtered, time-ordered queries
- Live subscriptions that receive the full result set on every change
- In-memory backend for development, PostgreSQL (JSONB) via psycopg
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Generator

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from app.config import get_settings
from app.models import utcnow

logger = logging.getLogger(__name__)

Document = dict[str, Any]
SnapshotCallback = Callable[[list[Document]], None]


@dataclass
class _Subscription:
    collection: str
    filters: dict[str, Any]
    callback: SnapshotCallback
    active: bool = field(default=True)


class DocumentStore:
    """Base store: subclasses provide persistence, this class handles subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._sub_lock = threading.Lock()
        self._clock_lock = threading.Lock()
        self._last_created: datetime | None = None

    # ---------- Backend hooks ----------

    def _insert(self, collection: str, doc_id: str, data: Document, created_at: datetime) -> None:
        raise NotImplementedError

    def _remove(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Document | None:
        raise NotImplementedError

    def query(self, collection: str, **filters: Any) -> list[Document]:
        """Documents in collection whose fields equal all filters, oldest first."""
        raise NotImplementedError

    def test_connection(self) -> bool:
        return True

    def close(self) -> None:
        pass

    # ---------- Writes ----------

    def add(self, collection: str, data: Document) -> str:
        """Append a document. The store assigns ``id`` and ``created_at``."""
        doc_id = uuid.uuid4().hex
        payload = {k: v for k, v in data.items() if k not in ("id", "created_at")}
        self._insert(collection, doc_id, payload, self._next_timestamp())
        self._notify(collection)
        return doc_id

    def _next_timestamp(self) -> datetime:
        """Wall-clock time, nudged forward so writes from this process never tie."""
        with self._clock_lock:
            now = utcnow()
            if self._last_created is not None and now <= self._last_created:
                now = self._last_created + timedelta(microseconds=1)
            self._last_created = now
            return now

    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        removed = self._remove(collection, doc_id)
        if removed:
            self._notify(collection)
        return removed

    # ---------- Live queries ----------

    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        **filters: Any,
    ) -> Callable[[], None]:
        """
        Subscribe to a filtered query.

        The callback receives the current result set immediately and again
        after every write to the collection. Returns an unsubscribe function.
        """
        sub = _Subscription(collection=collection, filters=filters, callback=callback)
        with self._sub_lock:
            self._subscriptions.append(sub)
        self._deliver(sub)

        def unsubscribe() -> None:
            sub.active = False
            with self._sub_lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _notify(self, collection: str) -> None:
        with self._sub_lock:
            targets = [s for s in self._subscriptions if s.collection == collection]
        for sub in targets:
            self._deliver(sub)

    def _deliver(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        try:
            sub.callback(self.query(sub.collection, **sub.filters))
        except Exception:
            logger.exception("Snapshot listener failed for %s", sub.collection)


class MemoryDocumentStore(DocumentStore):
    """Process-local store used in development and tests."""

    def __init__(self) -> None:
        super().__init__()
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = threading.Lock()

    def _insert(self, collection: str, doc_id: str, data: Document, created_at: datetime) -> None:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            docs[doc_id] = {**data, "id": doc_id, "created_at": created_at}

    def _remove(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(doc_id, None) is not None

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return dict(doc) if doc is not None else None

    def query(self, collection: str, **filters: Any) -> list[Document]:
        with self._lock:
            docs = [
                dict(doc)
                for doc in self._collections.get(collection, {}).values()
                if all(doc.get(k) == v for k, v in filters.items())
            ]
        return sorted(docs, key=lambda d: d["created_at"])


_dumps = partial(json.dumps, default=str)


class PostgresDocumentStore(DocumentStore):
    """PostgreSQL-backed store keeping each document as a JSONB row."""

    def __init__(self, db_url: str) -> None:
        super().__init__()
        self._db_url = db_url
        self._pool: ConnectionPool | None = None
        self._schema_ready = False

    def _get_pool(self) -> ConnectionPool:
        """Get or create connection pool."""
        if self._pool is None:
            self._pool = ConnectionPool(
                self._db_url,
                min_size=1,
                max_size=10,
                kwargs={"row_factory": dict_row},
            )
        return self._pool

    @contextmanager
    def connection(self) -> Generator[psycopg.Connection, None, None]:
        """Get a connection from the pool, creating the table on first use."""
        pool = self._get_pool()
        with pool.connection() as conn:
            if not self._schema_ready:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS documents ("
                    " id TEXT PRIMARY KEY,"
                    " collection TEXT NOT NULL,"
                    " data JSONB NOT NULL,"
                    " created_at TIMESTAMPTZ NOT NULL)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS documents_collection_idx"
                    " ON documents (collection, created_at)"
                )
                self._schema_ready = True
            yield conn

    @staticmethod
    def _to_document(row: dict[str, Any]) -> Document:
        return {**row["data"], "id": row["id"], "created_at": row["created_at"]}

    def _insert(self, collection: str, doc_id: str, data: Document, created_at: datetime) -> None:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO documents (id, collection, data, created_at)"
                " VALUES (%s, %s, %s, %s)",
                (doc_id, collection, Jsonb(data, dumps=_dumps), created_at),
            )

    def _remove(self, collection: str, doc_id: str) -> bool:
        with self.connection() as conn:
            cur = conn.execute(
                "DELETE FROM documents WHERE collection = %s AND id = %s",
                (collection, doc_id),
            )
            return cur.rowcount > 0

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id, data, created_at FROM documents"
                " WHERE collection = %s AND id = %s",
                (collection, doc_id),
            ).fetchone()
        return self._to_document(row) if row else None

    def query(self, collection: str, **filters: Any) -> list[Document]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT id, data, created_at FROM documents"
                " WHERE collection = %s AND data @> %s"
                " ORDER BY created_at",
                (collection, Jsonb(filters, dumps=_dumps)),
            ).fetchall()
        return [self._to_document(row) for row in rows]

    def test_connection(self) -> bool:
        """Test database connectivity."""
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except Exception:
            return False

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            self._pool.close()
            self._pool = None


# Global store instance
_store: DocumentStore | None = None


def get_store() -> DocumentStore:
    """Get global document store, backed by PostgreSQL when DATABASE_URL is set."""
    global _store
    if _store is None:
        settings = get_settings()
        if settings.database_url:
            _store = PostgresDocumentStore(settings.database_url)
        else:
            logger.info("DATABASE_URL not set, using in-memory document store")
            _store = MemoryDocumentStore()
    return _store
