from .base import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, Query, Subscription
from .connection import get_connection, init_database
from .sqlite_store import SqliteDocumentStore

__all__ = [
    "SERVER_TIMESTAMP",
    "DocumentSnapshot",
    "DocumentStore",
    "Query",
    "Subscription",
    "get_connection",
    "init_database",
    "SqliteDocumentStore",
]
