"""webtop storage layer."""

from webtop.storage.path_resolver import (
    StoragePathResolver,
    get_database_path,
    get_default_resolver,
)
from webtop.storage.retention import RetentionManager, RetentionStats
from webtop.storage.store import EventStore

__all__ = [
    "EventStore",
    "RetentionManager",
    "RetentionStats",
    "StoragePathResolver",
    "get_database_path",
    "get_default_resolver",
]
