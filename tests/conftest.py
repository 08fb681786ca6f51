"""
Shared pytest fixtures for the production tracking test suite.

Provides:
    - feed: in-process LocalChangeFeed
    - store: in-memory SQLiteStore publishing into the feed
    - service: ProductionService over the store
    - kitchen: zone "Кухня" with item "Нижний модуль" in project "proj-1"
    - FakeTimer / timers: deterministic stand-in for threading.Timer
"""
import pytest

from database.change_feed import LocalChangeFeed
from database.sqlite_client import SQLiteStore
from models.production_models import EntityKind
from services.production_service import ProductionService

PROJECT_ID = "proj-1"


class FakeTimer:
    """threading.Timer replacement fired explicitly by the test"""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


class TimerFactory:
    """Records every timer created so tests can fire the latest one"""

    def __init__(self):
        self.created = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.created.append(timer)
        return timer

    @property
    def latest(self) -> FakeTimer:
        return self.created[-1]

    @property
    def live(self):
        return [t for t in self.created if t.started and not t.cancelled]


# ── Backend fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def feed():
    feed = LocalChangeFeed()
    yield feed
    feed.close()


@pytest.fixture()
def store(feed):
    store = SQLiteStore(":memory:", listener=feed.publish)
    yield store
    store.close()


@pytest.fixture()
def service(store):
    return ProductionService(store)


@pytest.fixture()
def timers():
    return TimerFactory()


# ── Hierarchy fixtures ───────────────────────────────────────────────────


@pytest.fixture()
def zone(service):
    return service.create_zone(PROJECT_ID, "Кухня")


@pytest.fixture()
def item(service, zone):
    return service.create_item(zone.id, {"code": "K-01", "name": "Нижний модуль"})


@pytest.fixture()
def component(service, item):
    """Component "Корпус" seeded from the ЛДСП template (7 stages)"""
    return service.create_component(item.id, {"name": "Корпус"}, template_key="ЛДСП")


def progress_of(store, kind: EntityKind, record_id: str) -> int:
    return store.get(kind, record_id)["progress"]
