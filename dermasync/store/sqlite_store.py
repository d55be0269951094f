"""SQLite-backed document store with in-process live queries."""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dermasync.errors import DocumentNotFoundError, RemoteStoreError

from .base import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    ErrorCallback,
    Query,
    SnapshotCallback,
    Subscription,
)
from .connection import get_connection, init_database

logger = logging.getLogger(__name__)

TIMESTAMP_KEY = "$timestamp"


def _json_default(value):
    if isinstance(value, datetime):
        return {TIMESTAMP_KEY: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: dict):
    if len(obj) == 1 and TIMESTAMP_KEY in obj:
        return datetime.fromisoformat(obj[TIMESTAMP_KEY])
    return obj


def encode_fields(fields: dict) -> str:
    return json.dumps(fields, default=_json_default)


def decode_fields(raw: str) -> dict:
    return json.loads(raw, object_hook=_json_object_hook)


def order_documents(documents: list[DocumentSnapshot], query: Query) -> list[DocumentSnapshot]:
    """Sort by the query's order field; documents without it go last."""
    if not query.order_by:
        return documents
    present = [d for d in documents if d.fields.get(query.order_by) is not None]
    missing = [d for d in documents if d.fields.get(query.order_by) is None]
    present.sort(key=lambda d: d.fields[query.order_by], reverse=query.descending)
    return present + missing


class SqliteDocumentStore(DocumentStore):
    """
    Document store over a single SQLite file.

    Each call opens its own connection and runs in a worker thread so the
    event loop is never blocked. Server timestamps come from a strictly
    increasing UTC clock, so writes are totally ordered by `createdAt`.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_database(self.db_path)
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._locks: dict[Subscription, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()
        self._last_timestamp: datetime | None = None

    # Server clock

    def server_now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _resolve(self, value):
        """Replace SERVER_TIMESTAMP sentinels, including nested ones."""
        if value is SERVER_TIMESTAMP:
            return self.server_now()
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return value

    # Sync helpers (run in worker threads)

    def _execute_write(self, sql: str, params: tuple) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _merge_sync(self, collection: str, doc_id: str, fields: dict, create: bool) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT fields FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if row is None and not create:
                conn.rollback()
                raise DocumentNotFoundError(f"Document not found: {collection}/{doc_id}")
            current = decode_fields(row["fields"]) if row else {}
            current.update(fields)
            conn.execute(
                "INSERT OR REPLACE INTO documents (collection, id, fields) VALUES (?, ?, ?)",
                (collection, doc_id, encode_fields(current)),
            )
            conn.commit()
        finally:
            conn.close()

    def _get_sync(self, collection: str, doc_id: str) -> dict | None:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT fields FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        finally:
            conn.close()
        return decode_fields(row["fields"]) if row else None

    def _query_sync(self, query: Query) -> list[DocumentSnapshot]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, fields FROM documents WHERE collection = ? ORDER BY rowid",
                (query.collection,),
            ).fetchall()
        finally:
            conn.close()
        documents = [DocumentSnapshot(id=row["id"], fields=decode_fields(row["fields"])) for row in rows]
        return order_documents([d for d in documents if query.matches(d.fields)], query)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            raise RemoteStoreError(str(e)) from e

    # DocumentStore

    async def add_document(self, collection: str, doc_id: str, fields: dict) -> None:
        payload = encode_fields(self._resolve(fields))
        await self._run(
            self._execute_write,
            "INSERT OR REPLACE INTO documents (collection, id, fields) VALUES (?, ?, ?)",
            (collection, doc_id, payload),
        )
        self._notify(collection)

    async def update_document(
        self, collection: str, doc_id: str, fields: dict, merge: bool = False
    ) -> None:
        await self._run(self._merge_sync, collection, doc_id, self._resolve(fields), merge)
        self._notify(collection)

    async def delete_document(self, collection: str, doc_id: str) -> None:
        deleted = await self._run(
            self._execute_write,
            "DELETE FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )
        if deleted:
            self._notify(collection)

    async def get_document(self, collection: str, doc_id: str) -> dict | None:
        return await self._run(self._get_sync, collection, doc_id)

    async def run_query(self, query: Query) -> list[DocumentSnapshot]:
        return await self._run(self._query_sync, query)

    # Live queries

    def subscribe(
        self,
        query: Query,
        callback: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(self, query, callback, on_error)
        self._subscriptions.setdefault(query.collection, []).append(subscription)
        self._locks[subscription] = asyncio.Lock()
        self._schedule(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        subscriptions = self._subscriptions.get(subscription.query.collection, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        self._locks.pop(subscription, None)

    def active_subscriptions(self, collection: str) -> list[Subscription]:
        return list(self._subscriptions.get(collection, []))

    def _notify(self, collection: str) -> None:
        for subscription in self.active_subscriptions(collection):
            self._schedule(subscription)

    def _schedule(self, subscription: Subscription) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(subscription))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, subscription: Subscription) -> None:
        lock = self._locks.get(subscription)
        if lock is None:
            return
        # Serialized per subscription so a later delivery never overtakes an earlier one
        async with lock:
            if not subscription.active:
                return
            try:
                documents = await self.run_query(subscription.query)
            except RemoteStoreError as e:
                subscription.fail(e)
                return
            try:
                subscription.deliver(documents)
            except Exception:
                logger.exception("Snapshot listener on %s raised", subscription.query.collection)

    async def wait_for_pending_writes(self) -> None:
        """Wait until every scheduled snapshot delivery has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
