import logging
import threading
from functools import partial
from typing import Callable, Dict, List, Optional, Set

from config import Config
from database.change_feed import ChangeFeed, Subscription
from models.production_models import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeNotificationController:
    """
    Coalesces change notifications into one refetch per project

    Each event marks its project dirty and restarts a single debounce
    timer. When the timer fires, every dirty project is refetched once
    and the dirty set is cleared. Events carry no payload that is applied
    directly; the refetch is the only way remote changes reach a viewer.
    """

    def __init__(self, feed: ChangeFeed, refetch: Callable[[str], None],
                 debounce_seconds: Optional[float] = None,
                 timer_factory: Callable = threading.Timer):
        self.feed = feed
        self.refetch = refetch
        self.debounce_seconds = (
            Config.REALTIME_DEBOUNCE_MS / 1000 if debounce_seconds is None else debounce_seconds
        )
        self._timer_factory = timer_factory
        self._subscriptions: Dict[str, Subscription] = {}
        self._dirty: Set[str] = set()
        self._timer = None
        self._generation = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def watched(self) -> List[str]:
        with self._lock:
            return sorted(self._subscriptions)

    @property
    def pending(self) -> bool:
        with self._lock:
            return bool(self._dirty)

    def watch(self, project_id: str):
        with self._lock:
            if self._closed:
                raise RuntimeError("Change notification controller is closed")
            if project_id in self._subscriptions:
                return
        subscription = self.feed.subscribe(project_id, partial(self._on_event, project_id))
        with self._lock:
            self._subscriptions[project_id] = subscription
        logger.info(f"REALTIME: watching project {project_id}")

    def unwatch(self, project_id: str):
        with self._lock:
            subscription = self._subscriptions.pop(project_id, None)
            self._dirty.discard(project_id)
            if not self._dirty:
                self._cancel_timer()
        if subscription is not None:
            subscription.unsubscribe()
            logger.info(f"REALTIME: stopped watching project {project_id}")

    def close(self):
        with self._lock:
            self._closed = True
            self._cancel_timer()
            self._dirty.clear()
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.unsubscribe()

    def _on_event(self, project_id: str, event: ChangeEvent):
        with self._lock:
            if self._closed or project_id not in self._subscriptions:
                return
            self._dirty.add(project_id)
            self._cancel_timer()
            self._generation += 1
            self._timer = self._timer_factory(self.debounce_seconds, partial(self._flush, self._generation))
            self._timer.daemon = True
            self._timer.start()
        logger.debug(f"REALTIME: {event.event_type.value} {event.entity_kind.value} {event.record_id}")

    def _flush(self, generation: int):
        with self._lock:
            # A timer that was superseded may still fire once
            if self._closed or generation != self._generation:
                return
            projects = sorted(self._dirty)
            self._dirty.clear()
            self._timer = None

        for project_id in projects:
            try:
                self.refetch(project_id)
            except Exception:
                logger.exception(f"REALTIME: refetch failed for project {project_id}")

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
