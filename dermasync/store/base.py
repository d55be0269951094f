"""Document store capability: document CRUD plus live query subscriptions."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ServerTimestamp:
    """Sentinel replaced by the store's own clock when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = ServerTimestamp()


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    fields: dict


@dataclass(frozen=True)
class Query:
    """Equality filter on top-level fields, optionally ordered by one field."""
    collection: str
    where: dict[str, Any] = field(default_factory=dict)
    order_by: str | None = None
    descending: bool = False

    def matches(self, fields: dict) -> bool:
        return all(fields.get(key) == value for key, value in self.where.items())


SnapshotCallback = Callable[[list[DocumentSnapshot]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle for a live query. `remove()` stops further deliveries."""

    def __init__(
        self,
        store: "DocumentStore",
        query: Query,
        callback: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ):
        self.store = store
        self.query = query
        self.callback = callback
        self.on_error = on_error
        self.active = True

    def deliver(self, documents: list[DocumentSnapshot]) -> None:
        if self.active:
            self.callback(documents)

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        if self.on_error:
            self.on_error(error)
        else:
            logger.error("Live query on %s failed: %s", self.query.collection, error)

    def remove(self) -> None:
        if self.active:
            self.active = False
            self.store.unsubscribe(self)


class DocumentStore(ABC):
    """
    Remote document store.

    Writes resolve `SERVER_TIMESTAMP` values with the store clock. Live
    queries deliver the full current result set after subscribing and after
    every write to the collection; deliveries are not queued across a
    `remove()`.
    """

    @abstractmethod
    async def add_document(self, collection: str, doc_id: str, fields: dict) -> None:
        """Create or overwrite a document."""

    @abstractmethod
    async def update_document(
        self, collection: str, doc_id: str, fields: dict, merge: bool = False
    ) -> None:
        """
        Write the given top-level fields, leaving the others as they are.

        With merge=False the document must exist (DocumentNotFoundError);
        with merge=True a missing document is created.
        """

    @abstractmethod
    async def delete_document(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def get_document(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abstractmethod
    async def run_query(self, query: Query) -> list[DocumentSnapshot]:
        ...

    @abstractmethod
    def subscribe(
        self,
        query: Query,
        callback: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        ...

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...
