"""
Backend selection from Config
"""
import logging
from typing import Optional

from config import Config
from database.change_feed import ChangeFeed, LocalChangeFeed
from database.store import ChangeListener, EntityStore

logger = logging.getLogger(__name__)


def create_store(listener: Optional[ChangeListener] = None) -> EntityStore:
    """Entity store for the configured backend

    The listener only applies to SQLite; Supabase publishes changes
    through its own realtime feed.
    """
    if Config.STORE_BACKEND == "sqlite":
        from database.sqlite_client import SQLiteStore
        return SQLiteStore(Config.SQLITE_DB_PATH, listener=listener)

    from database.supabase_client import SupabaseStore
    return SupabaseStore()


def create_change_feed() -> ChangeFeed:
    if Config.STORE_BACKEND == "sqlite":
        return LocalChangeFeed()

    from database.realtime_client import SupabaseChangeFeed
    return SupabaseChangeFeed()


def create_backend():
    """Store and feed wired together for the configured backend"""
    feed = create_change_feed()
    listener = feed.publish if isinstance(feed, LocalChangeFeed) else None
    store = create_store(listener=listener)
    logger.info(f"Using {Config.STORE_BACKEND} backend")
    return store, feed
