from .base import QueueStore
from .redis_store import RedisQueueStore
from .sqlite_store import SqliteQueueStore


def open_store(settings) -> QueueStore:
    """Redis wins when both targets are configured."""
    if settings.redis_url:
        return RedisQueueStore(url=settings.redis_url, prefix=settings.prefix)
    return SqliteQueueStore(settings.db_path)


__all__ = ["QueueStore", "RedisQueueStore", "SqliteQueueStore", "open_store"]
