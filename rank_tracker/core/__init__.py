"""Core package initialization."""
from rank_tracker.core.config import settings
from rank_tracker.core.database import Base, get_db
from rank_tracker.core.redis import get_redis, close_redis

__all__ = ["settings", "Base", "get_db", "get_redis", "close_redis"]
