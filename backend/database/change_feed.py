"""
Change notification feeds scoped by project id
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from models.production_models import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for one project subscription; unsubscribe() is idempotent"""

    def __init__(self, project_id: str, release: Callable[[], None]):
        self.project_id = project_id
        self._release = release
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._release()


class ChangeFeed(ABC):
    """Source of {entity kind, record id, event type} notifications"""

    @abstractmethod
    def subscribe(self, project_id: str, callback: ChangeCallback) -> Subscription:
        """Deliver every change under project_id to callback until unsubscribed"""

    def close(self):
        """Release everything held by the feed"""


class LocalChangeFeed(ChangeFeed):
    """In-process fan-out, fed by SQLiteStore's listener hook

    Events without a project id reach every subscriber.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, project_id: str, callback: ChangeCallback) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(project_id, []).append(callback)
        logger.info(f"Subscribed to changes for project {project_id}")
        return Subscription(project_id, lambda: self._remove(project_id, callback))

    def publish(self, event: ChangeEvent):
        for callback in self._targets(event.project_id):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Change callback failed for {event.entity_kind.value} {event.record_id}")

    def subscriber_count(self, project_id: Optional[str] = None) -> int:
        with self._lock:
            if project_id is not None:
                return len(self._subscribers.get(project_id, []))
            return sum(len(cbs) for cbs in self._subscribers.values())

    def close(self):
        with self._lock:
            self._subscribers.clear()

    def _targets(self, project_id: Optional[str]) -> List[ChangeCallback]:
        with self._lock:
            if project_id is None:
                return [cb for cbs in self._subscribers.values() for cb in cbs]
            return list(self._subscribers.get(project_id, []))

    def _remove(self, project_id: str, callback: ChangeCallback):
        with self._lock:
            callbacks = self._subscribers.get(project_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(project_id, None)
        logger.info(f"Unsubscribed from changes for project {project_id}")
