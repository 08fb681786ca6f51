"""
Entity store contract
Pure record persistence for the production hierarchy: no business rules, no retries
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from models.production_models import ChangeEvent, EntityKind

ChangeListener = Callable[[ChangeEvent], None]

TABLES: Dict[EntityKind, str] = {
    EntityKind.ZONE: "production_zones",
    EntityKind.ITEM: "production_items",
    EntityKind.COMPONENT: "production_components",
    EntityKind.STAGE: "production_stages",
    EntityKind.ITEM_STAGE: "production_item_stages",
    EntityKind.MATERIAL: "production_component_materials",
    EntityKind.PART: "production_component_parts",
}


class EntityStore(ABC):
    """CRUD over zone/item/component/stage/material/part records

    Records are plain dicts keyed by column name. Failures surface as
    errors.StoreError subclasses.
    """

    @abstractmethod
    def get(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        """Fetch one record, raising RecordNotFoundError if missing"""

    @abstractmethod
    def list(self, kind: EntityKind, parent_id: str) -> List[Dict[str, Any]]:
        """All records of a kind under one parent, ordered by position"""

    @abstractmethod
    def create(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record and return it as stored"""

    @abstractmethod
    def update(self, kind: EntityKind, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update and return the stored record"""

    @abstractmethod
    def delete(self, kind: EntityKind, record_id: str) -> None:
        """Remove a record; the store cascades to its children"""

    def close(self):
        """Release connections held by the store"""


def next_position(records: List[Dict[str, Any]]) -> int:
    """Position after the last sibling (0 for an empty list)"""
    positions = [r.get("position") for r in records if r.get("position") is not None]
    return max(positions) + 1 if positions else 0


def notify(listener: Optional[ChangeListener], event: ChangeEvent):
    if listener is not None:
        listener(event)
