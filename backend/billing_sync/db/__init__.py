"""Database package: shared engine, session factory, and the optional Redis push channel."""

from billing_sync.db.base import Base, close_db, get_session_factory, init_db
from billing_sync.db.redis import close_redis, get_optional_redis, init_redis

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "get_optional_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
]
