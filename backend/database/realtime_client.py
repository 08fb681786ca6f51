"""
Supabase realtime change feed
Runs the async realtime client on a background event loop so synchronous
services can subscribe and unsubscribe without owning a loop themselves.
"""
import asyncio
import logging
import threading
from functools import partial
from typing import Any, Dict, List

from supabase import acreate_client

from config import Config
from database.change_feed import ChangeCallback, ChangeFeed, Subscription
from database.store import TABLES
from models.production_models import ChangeEvent, ChangeType, EntityKind

logger = logging.getLogger(__name__)

# Record types that trigger a refetch of the project tree
WATCHED_KINDS = (
    EntityKind.ZONE,
    EntityKind.ITEM,
    EntityKind.COMPONENT,
    EntityKind.STAGE,
    EntityKind.ITEM_STAGE,
    EntityKind.MATERIAL,
)

# Only these tables carry project_id and can be filtered server-side
_PROJECT_SCOPED = {EntityKind.ZONE, EntityKind.ITEM}

_TIMEOUT_SECONDS = 10


def parse_payload(kind: EntityKind, project_id: str, payload: Dict[str, Any]) -> ChangeEvent:
    """Turn a postgres_changes payload into a ChangeEvent"""
    data = payload.get("data", payload)
    event_type = data.get("type") or data.get("eventType") or ChangeType.UPDATE.value
    record = data.get("record") or data.get("new") or data.get("old_record") or data.get("old") or {}
    return ChangeEvent(
        entity_kind=kind,
        record_id=record.get("id"),
        event_type=ChangeType(str(event_type).upper()),
        project_id=project_id,
    )


class SupabaseChangeFeed(ChangeFeed):
    """One realtime channel per watched table per subscribed project"""

    def __init__(self, url: str = None, key: str = None):
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="supabase-realtime", daemon=True
        )
        self._thread.start()
        self._client = self._run(acreate_client(url or Config.SUPABASE_URL, key or Config.SUPABASE_KEY))
        logger.info("Supabase realtime feed initialized")

    def subscribe(self, project_id: str, callback: ChangeCallback) -> Subscription:
        channels = []
        for kind in WATCHED_KINDS:
            table = TABLES[kind]
            channel = self._client.channel(f"{table}:{project_id}")
            channel.on_postgres_changes(
                event="*",
                schema="public",
                table=table,
                filter=f"project_id=eq.{project_id}" if kind in _PROJECT_SCOPED else None,
                callback=partial(self._dispatch, kind, project_id, callback),
            )
            self._run(channel.subscribe())
            channels.append(channel)

        logger.info(f"Real-time subscriptions active for project: {project_id}")
        return Subscription(project_id, partial(self._release, project_id, channels))

    def close(self):
        if self._loop.is_closed():
            return
        self._run(self._client.remove_all_channels())
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=_TIMEOUT_SECONDS)
        self._loop.close()
        logger.info("Supabase realtime feed closed")

    def _dispatch(self, kind: EntityKind, project_id: str, callback: ChangeCallback, payload):
        try:
            callback(parse_payload(kind, project_id, payload))
        except Exception:
            logger.exception(f"Real-time callback failed for {TABLES[kind]}")

    def _release(self, project_id: str, channels: List[Any]):
        logger.info(f"Unsubscribing from real-time channels for project {project_id}")
        for channel in channels:
            self._run(self._client.remove_channel(channel))

    def _run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=_TIMEOUT_SECONDS)
