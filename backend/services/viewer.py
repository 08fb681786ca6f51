import logging
import threading
from typing import Callable, Optional

from database.change_feed import ChangeFeed
from errors import RecordNotFoundError
from models.production_models import EntityKind, Item
from services.error_reporter import ErrorReporter
from services.mirror import ProductionMirror
from services.optimistic_service import OptimisticMutationLayer
from services.production_service import ProductionService
from services.realtime_service import ChangeNotificationController

logger = logging.getLogger(__name__)


class ProductionViewer:
    """
    One viewer of one project

    Holds the mirror, routes mutations through the optimistic layer and
    refetches the project whenever the change feed reports activity.
    Nothing is shared between viewers; each owns its mirror and errors.
    """

    def __init__(self, service: ProductionService, feed: ChangeFeed, project_id: str,
                 errors: Optional[ErrorReporter] = None,
                 debounce_seconds: Optional[float] = None,
                 timer_factory: Callable = threading.Timer):
        self.service = service
        self.project_id = project_id
        self.errors = errors if errors is not None else ErrorReporter()
        self.mirror = ProductionMirror(project_id)
        self.mutations = OptimisticMutationLayer(service, self.mirror, self.errors)
        self.notifications = ChangeNotificationController(
            feed, self._on_remote_change, debounce_seconds, timer_factory
        )
        self.open_item_id: Optional[str] = None

    def open(self) -> "ProductionViewer":
        self.refresh()
        self.notifications.watch(self.project_id)
        logger.info(f"Viewer opened project {self.project_id}")
        return self

    def open_item(self, item_id: str) -> Item:
        self.mirror.load_item_detail(self.service.get_item_detail(item_id))
        self.open_item_id = item_id
        return self.mirror.item(item_id)

    def close_item(self):
        self.open_item_id = None

    def refresh(self):
        """Refetch the project listing and the open item, if any"""
        self.mirror.load_project(
            self.service.list_zones(self.project_id),
            self.service.list_project_items(self.project_id),
        )
        if self.open_item_id is None:
            return
        try:
            self.mirror.load_item_detail(self.service.get_item_detail(self.open_item_id))
        except RecordNotFoundError:
            logger.info(f"Open item {self.open_item_id} was deleted elsewhere")
            self.mirror.remove_subtree(EntityKind.ITEM, self.open_item_id)
            self.open_item_id = None

    def overview(self):
        return self.service.get_project_overview(self.project_id)

    def close(self):
        self.notifications.close()
        logger.info(f"Viewer closed project {self.project_id}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _on_remote_change(self, project_id: str):
        try:
            self.refresh()
        except Exception as e:
            self.errors.report(e, f"refresh project {project_id}")

