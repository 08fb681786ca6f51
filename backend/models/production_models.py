"""
Data models for production tracking
Zone -> Item -> Component -> Stage, plus descriptive materials and parts
"""
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from services.template_catalog import stage_label


class EntityKind(str, Enum):
    ZONE = "zone"
    ITEM = "item"
    COMPONENT = "component"
    STAGE = "stage"
    ITEM_STAGE = "item_stage"
    MATERIAL = "material"
    PART = "part"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    QA = "qa"
    COMPLETED = "completed"


class StageOwner(str, Enum):
    """Which level of the hierarchy a stage belongs to"""
    COMPONENT = "component"
    ITEM = "item"

    @property
    def kind(self) -> EntityKind:
        return EntityKind.STAGE if self is StageOwner.COMPONENT else EntityKind.ITEM_STAGE

    @property
    def parent_field(self) -> str:
        return "component_id" if self is StageOwner.COMPONENT else "item_id"

    @property
    def allows_qa(self) -> bool:
        return self is StageOwner.COMPONENT

    @property
    def allowed_statuses(self) -> FrozenSet[StageStatus]:
        if self.allows_qa:
            return frozenset(StageStatus)
        return frozenset(s for s in StageStatus if s is not StageStatus.QA)


class TemplateStrategy(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Column holding the parent id for every kind; list(kind, parent_id) filters on it
PARENT_FIELDS: Dict[EntityKind, str] = {
    EntityKind.ZONE: "project_id",
    EntityKind.ITEM: "zone_id",
    EntityKind.COMPONENT: "item_id",
    EntityKind.STAGE: "component_id",
    EntityKind.ITEM_STAGE: "item_id",
    EntityKind.MATERIAL: "component_id",
    EntityKind.PART: "component_id",
}

STATUS_COLORS: Dict[StageStatus, str] = {
    StageStatus.PENDING: "neutral",
    StageStatus.IN_PROGRESS: "accent",
    StageStatus.QA: "warning",
    StageStatus.COMPLETED: "success",
}


def status_color(status) -> str:
    """Display color tag for a stage status"""
    return STATUS_COLORS[StageStatus(status)]


def _known_fields(cls, record: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls) if f.init}
    return {k: v for k, v in record.items() if k in names}


@dataclass
class Stage:
    """One step of a component's (or item's) production sequence"""
    id: str
    owner: StageOwner
    owner_id: str
    name: str
    status: StageStatus = StageStatus.PENDING
    position: int = 0
    custom_label: Optional[str] = None
    color: Optional[str] = None
    assignee_id: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    notes: Optional[str] = None
    due_date: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def label(self) -> str:
        return self.custom_label or stage_label(self.name, self.owner is StageOwner.ITEM) or self.name

    @property
    def is_completed(self) -> bool:
        return self.status is StageStatus.COMPLETED

    @classmethod
    def from_record(cls, record: Dict[str, Any], owner: StageOwner = StageOwner.COMPONENT) -> "Stage":
        data = _known_fields(cls, record)
        data.pop("owner", None)
        data.pop("owner_id", None)
        status = StageStatus(record.get("status") or StageStatus.PENDING.value)
        data["status"] = status
        data["color"] = record.get("color") or status_color(status)
        return cls(owner=owner, owner_id=record[owner.parent_field], **data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            self.owner.parent_field: self.owner_id,
            "name": self.name,
            "label": self.label,
            "custom_label": self.custom_label,
            "status": self.status.value,
            "color": self.color or status_color(self.status),
            "position": self.position,
            "assignee_id": self.assignee_id,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "notes": self.notes,
            "due_date": self.due_date,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Material:
    """Named material record on a component (descriptive only)"""
    id: str
    component_id: str
    name: str
    material_type: Optional[str] = None
    thickness: Optional[float] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    color: Optional[str] = None
    finish: Optional[str] = None
    wood_species: Optional[str] = None
    grade: Optional[str] = None
    brand: Optional[str] = None
    article: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Material":
        return cls(**_known_fields(cls, record))

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Part:
    """Cut-list entry on a component (descriptive only)"""
    id: str
    component_id: str
    name: str
    quantity: float = 1
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    material: Optional[str] = None
    notes: Optional[str] = None
    position: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Part":
        return cls(**_known_fields(cls, record))

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Component:
    """Sub-assembly of an item, tracked through its ordered stages"""
    id: str
    item_id: str
    name: str
    material: Optional[str] = None
    quantity: float = 1
    unit: str = "шт"
    progress: int = 0
    position: int = 0
    stages: List[Stage] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    parts: List[Part] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Component":
        data = _known_fields(cls, record)
        for nested in ("stages", "materials", "parts"):
            data.pop(nested, None)
        data["progress"] = int(record.get("progress") or 0)
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "name": self.name,
            "material": self.material,
            "quantity": self.quantity,
            "unit": self.unit,
            "progress": self.progress,
            "position": self.position,
            "stages": [s.to_dict() for s in self.stages],
            "materials": [m.to_dict() for m in self.materials],
            "parts": [p.to_dict() for p in self.parts],
        }


@dataclass
class Item:
    """Buildable unit within a zone"""
    id: str
    zone_id: str
    code: str
    name: str
    project_id: Optional[str] = None
    quantity: float = 1
    unit: str = "шт"
    current_stage: Optional[str] = None
    progress: int = 0
    position: int = 0
    materials: Optional[str] = None
    technical_notes: Optional[str] = None
    manager_comment: Optional[str] = None
    due_date: Optional[str] = None
    components: List[Component] = field(default_factory=list)
    stages: List[Stage] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Item":
        data = _known_fields(cls, record)
        data.pop("components", None)
        data.pop("stages", None)
        data["progress"] = int(record.get("progress") or 0)
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "zone_id": self.zone_id,
            "project_id": self.project_id,
            "code": self.code,
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "current_stage": self.current_stage,
            "progress": self.progress,
            "position": self.position,
            "materials": self.materials,
            "technical_notes": self.technical_notes,
            "manager_comment": self.manager_comment,
            "due_date": self.due_date,
            "components": [c.to_dict() for c in self.components],
            "stages": [s.to_dict() for s in self.stages],
        }


@dataclass
class Zone:
    """Top-level grouping of items within a project"""
    id: str
    project_id: str
    name: str
    position: int = 0
    progress: int = 0
    items_count: int = 0
    color: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Zone":
        data = _known_fields(cls, record)
        data["progress"] = int(record.get("progress") or 0)
        data["items_count"] = int(record.get("items_count") or 0)
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ProjectOverview:
    """Zones and items of a project with the derived project progress"""
    project_id: str
    progress: int = 0
    zones: List[Zone] = field(default_factory=list)
    items: List[Item] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "progress": self.progress,
            "zones": [z.to_dict() for z in self.zones],
            "items": [i.to_dict() for i in self.items],
        }


@dataclass
class ChangeEvent:
    """Notification that a record changed somewhere in a project's tree"""
    entity_kind: EntityKind
    record_id: Optional[str]
    event_type: ChangeType
    project_id: Optional[str] = None
