import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Iterable, List, Optional

from database.store import EntityStore
from errors import CascadeError, StoreError
from models.production_models import EntityKind, StageStatus

logger = logging.getLogger(__name__)


def round_half_up(value: Fraction) -> int:
    """Integer percentage, halves rounded up (12.5 -> 13)"""
    return math.floor(value + Fraction(1, 2))


def component_progress(statuses: Iterable) -> int:
    """round(100 * completed / total); 0 for a component without stages"""
    statuses = [StageStatus(s) for s in statuses]
    if not statuses:
        return 0
    completed = sum(1 for s in statuses if s is StageStatus.COMPLETED)
    return round_half_up(Fraction(100 * completed, len(statuses)))


def mean_progress(values: Iterable[int]) -> int:
    """Rounded mean of child progress values; 0 for no children"""
    values = [int(v or 0) for v in values]
    if not values:
        return 0
    return round_half_up(Fraction(sum(values), len(values)))


@dataclass
class CascadeResult:
    """Aggregates written by one cascade"""
    component_id: Optional[str]
    component_progress: Optional[int]
    item_id: Optional[str] = None
    item_progress: Optional[int] = None
    zone_id: Optional[str] = None
    zone_progress: Optional[int] = None

    def to_dict(self):
        return {
            "component_id": self.component_id,
            "component_progress": self.component_progress,
            "item_id": self.item_id,
            "item_progress": self.item_progress,
            "zone_id": self.zone_id,
            "zone_progress": self.zone_progress,
        }


class ProgressService:
    """
    Bottom-up progress aggregation: component -> item -> zone

    Each level is recomputed from the full current set of its children and
    persisted as a separate write. The chain is not atomic: a failure above
    the component level keeps the lower writes and raises CascadeError.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    def recalculate_component_progress(self, component_id: str) -> int:
        stages = self.store.list(EntityKind.STAGE, component_id)
        progress = component_progress(s["status"] for s in stages)
        self.store.update(EntityKind.COMPONENT, component_id, {"progress": progress})
        logger.debug(f"Component {component_id}: {progress}% ({len(stages)} stages)")
        return progress

    def recalculate_item_progress(self, item_id: str) -> int:
        components = self.store.list(EntityKind.COMPONENT, item_id)
        progress = mean_progress(c.get("progress") for c in components)
        self.store.update(EntityKind.ITEM, item_id, {"progress": progress})
        logger.debug(f"Item {item_id}: {progress}% ({len(components)} components)")
        return progress

    def recalculate_zone_progress(self, zone_id: str) -> int:
        """Zone progress from its items; also refreshes items_count"""
        items = self.store.list(EntityKind.ITEM, zone_id)
        progress = mean_progress(i.get("progress") for i in items)
        self.store.update(EntityKind.ZONE, zone_id, {"progress": progress, "items_count": len(items)})
        logger.debug(f"Zone {zone_id}: {progress}% ({len(items)} items)")
        return progress

    def recalculate_cascade(self, component_id: str) -> CascadeResult:
        """
        Recompute component, then its item, then its zone

        Store errors in the component step propagate unmodified. Failures
        after that are reported as CascadeError naming the fresh levels.
        """
        result = CascadeResult(component_id, self.recalculate_component_progress(component_id))
        completed: List[str] = ["component"]

        try:
            result.item_id = self.store.get(EntityKind.COMPONENT, component_id)["item_id"]
            result.item_progress = self.recalculate_item_progress(result.item_id)
            completed.append("item")

            result.zone_id = self.store.get(EntityKind.ITEM, result.item_id)["zone_id"]
            result.zone_progress = self.recalculate_zone_progress(result.zone_id)
            completed.append("zone")
        except StoreError as e:
            failed = "item" if len(completed) == 1 else "zone"
            logger.warning(
                f"CASCADE: stopped at {failed} for component {component_id}, "
                f"aggregates above {completed[-1]} are stale: {e}"
            )
            raise CascadeError(component_id, completed, failed) from e

        logger.info(
            f"CASCADE: component {component_id}={result.component_progress}% "
            f"item={result.item_progress}% zone={result.zone_progress}%"
        )
        return result

    def recalculate_item_cascade(self, item_id: str) -> CascadeResult:
        """Item then zone, used when a whole component appears or disappears"""
        item_progress = self.recalculate_item_progress(item_id)
        zone_id = self.store.get(EntityKind.ITEM, item_id)["zone_id"]
        zone_progress = self.recalculate_zone_progress(zone_id)
        return CascadeResult(
            component_id=None,
            component_progress=None,
            item_id=item_id,
            item_progress=item_progress,
            zone_id=zone_id,
            zone_progress=zone_progress,
        )
