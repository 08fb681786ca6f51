"""
Client-held mirror of one project's production tree

Every entity is a MirrorEntry holding the last confirmed record and an
optional optimistic guess on top of it. reduce_entry is the only place
entries change; a confirmed record always replaces the guess.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from models.production_models import (
    PARENT_FIELDS,
    Component,
    EntityKind,
    Item,
    Material,
    Part,
    Stage,
    StageOwner,
    Zone,
)
from services.progress_service import CascadeResult, component_progress, mean_progress

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class Action(str, Enum):
    OPTIMISTIC = "optimistic"   # layer a local guess over the confirmed record
    CONFIRM = "confirm"         # authoritative record arrived
    CONFIRM_FIELDS = "confirm_fields"   # authoritative values for some fields
    DELETE = "delete"           # optimistic delete (tombstone)
    DISCARD = "discard"         # drop the guess, back to confirmed
    REMOVE = "remove"           # confirmed delete


@dataclass(frozen=True)
class MirrorEntry:
    confirmed: Optional[Record] = None
    optimistic: Optional[Record] = None
    deleted: bool = False

    @property
    def value(self) -> Optional[Record]:
        if self.deleted:
            return None
        return self.optimistic if self.optimistic is not None else self.confirmed

    @property
    def pending(self) -> bool:
        return self.deleted or self.optimistic is not None


def reduce_entry(entry: Optional[MirrorEntry], action: Action,
                 record: Optional[Record] = None) -> Optional[MirrorEntry]:
    """Next state of one entry; None means the entity is gone"""
    entry = entry or MirrorEntry()

    if action is Action.OPTIMISTIC:
        base = entry.optimistic if entry.optimistic is not None else entry.confirmed
        return MirrorEntry(entry.confirmed, {**(base or {}), **(record or {})})
    if action is Action.CONFIRM:
        return MirrorEntry(dict(record))
    if action is Action.CONFIRM_FIELDS:
        if entry.confirmed is None:
            return entry
        return MirrorEntry({**entry.confirmed, **(record or {})})
    if action is Action.DELETE:
        return MirrorEntry(entry.confirmed, entry.optimistic, deleted=True)
    if action is Action.DISCARD:
        return MirrorEntry(entry.confirmed) if entry.confirmed is not None else None
    if action is Action.REMOVE:
        return None
    raise ValueError(f"Unknown mirror action: {action}")


def _flat(model) -> Record:
    return {k: v for k, v in model.to_dict().items() if not isinstance(v, list)}


class ProductionMirror:
    """Thread-safe store of MirrorEntry values per kind and id"""

    def __init__(self, project_id: Optional[str] = None):
        self.project_id = project_id
        self.version = 0
        self._entries: Dict[EntityKind, Dict[str, MirrorEntry]] = {kind: {} for kind in EntityKind}
        self._listeners: List[Callable[["ProductionMirror"], None]] = []
        self._lock = threading.RLock()

    def add_listener(self, callback: Callable[["ProductionMirror"], None]):
        """Called after every change, e.g. to re-render"""
        self._listeners.append(callback)

    # ================================================================
    # Entry access
    # ================================================================
    def dispatch(self, kind: EntityKind, record_id: str, action: Action, record: Optional[Record] = None):
        with self._lock:
            self._apply(kind, record_id, action, record)
        self._changed()

    def entry(self, kind: EntityKind, record_id: str) -> Optional[MirrorEntry]:
        with self._lock:
            return self._entries[kind].get(record_id)

    def get(self, kind: EntityKind, record_id: str) -> Optional[Record]:
        entry = self.entry(kind, record_id)
        return dict(entry.value) if entry and entry.value is not None else None

    def children(self, kind: EntityKind, parent_id: str) -> List[Record]:
        """Visible records under a parent, ordered by position"""
        parent_field = PARENT_FIELDS[kind]
        with self._lock:
            records = [
                dict(e.value) for e in self._entries[kind].values()
                if e.value is not None and e.value.get(parent_field) == parent_id
            ]
        return sorted(records, key=lambda r: (r.get("position") is None, r.get("position") or 0))

    def has_pending(self) -> bool:
        with self._lock:
            return any(e.pending for entries in self._entries.values() for e in entries.values())

    # ================================================================
    # Loading authoritative state
    # ================================================================
    def load_project(self, zones: List[Zone], items: List[Item]):
        """Replace zones and items with a fresh listing; prune orphans"""
        with self._lock:
            self._replace(EntityKind.ZONE, (_flat(z) for z in zones))
            self._replace(EntityKind.ITEM, (_flat(i) for i in items))
            item_ids = set(self._entries[EntityKind.ITEM])
            for kind in (EntityKind.COMPONENT, EntityKind.ITEM_STAGE):
                for record_id, entry in list(self._entries[kind].items()):
                    parent = (entry.optimistic or entry.confirmed or {}).get("item_id")
                    if parent not in item_ids:
                        self._remove_subtree(kind, record_id)
        self._changed()

    def load_item_detail(self, item: Item):
        """Replace one item's subtree with a freshly fetched detail"""
        with self._lock:
            self._drop_item_children(item.id)
            self._apply(EntityKind.ITEM, item.id, Action.CONFIRM, _flat(item))
            for stage in item.stages:
                self._apply(EntityKind.ITEM_STAGE, stage.id, Action.CONFIRM, _flat(stage))
            for component in item.components:
                self._load_component(component)
        self._changed()

    def load_component(self, component: Component):
        with self._lock:
            self._remove_subtree(EntityKind.COMPONENT, component.id)
            self._load_component(component)
        self._changed()

    def load_stages(self, component_id: str, stages: List[Stage]):
        with self._lock:
            for record_id in self._ids_under(EntityKind.STAGE, component_id):
                self._apply(EntityKind.STAGE, record_id, Action.REMOVE)
            for stage in stages:
                self._apply(EntityKind.STAGE, stage.id, Action.CONFIRM, _flat(stage))
        self._changed()

    def apply_cascade(self, cascade: Optional[CascadeResult]):
        """Overwrite local aggregate guesses with authoritative values"""
        if cascade is None:
            return
        with self._lock:
            if cascade.component_id and cascade.component_progress is not None:
                self._confirm_progress(EntityKind.COMPONENT, cascade.component_id, cascade.component_progress)
            if cascade.item_id and cascade.item_progress is not None:
                self._confirm_progress(EntityKind.ITEM, cascade.item_id, cascade.item_progress)
            if cascade.zone_id and cascade.zone_progress is not None:
                self._confirm_progress(EntityKind.ZONE, cascade.zone_id, cascade.zone_progress)
        self._changed()

    def discard_item_subtree(self, item_id: str):
        """Drop every optimistic guess in an item and its descendants"""
        with self._lock:
            self._apply(EntityKind.ITEM, item_id, Action.DISCARD)
            for record_id in self._ids_under(EntityKind.ITEM_STAGE, item_id):
                self._apply(EntityKind.ITEM_STAGE, record_id, Action.DISCARD)
            for component_id in self._ids_under(EntityKind.COMPONENT, item_id):
                for kind in (EntityKind.STAGE, EntityKind.MATERIAL, EntityKind.PART):
                    for record_id in self._ids_under(kind, component_id):
                        self._apply(kind, record_id, Action.DISCARD)
                self._apply(EntityKind.COMPONENT, component_id, Action.DISCARD)
        self._changed()

    def discard_all(self):
        with self._lock:
            for kind, entries in self._entries.items():
                for record_id in list(entries):
                    self._apply(kind, record_id, Action.DISCARD)
        self._changed()

    def remove_subtree(self, kind: EntityKind, record_id: str):
        with self._lock:
            self._remove_subtree(kind, record_id)
        self._changed()

    def delete_subtree(self, kind: EntityKind, record_id: str):
        """Optimistically hide a record and everything beneath it"""
        with self._lock:
            for child_kind, child_id in self._descendants(kind, record_id):
                self._apply(child_kind, child_id, Action.DELETE)
            self._apply(kind, record_id, Action.DELETE)
        self._changed()

    # ================================================================
    # Local aggregate guesses
    # ================================================================
    def guess_progress(self, component_id: Optional[str] = None, item_id: Optional[str] = None):
        """Recompute aggregates from mirrored children as optimistic values"""
        with self._lock:
            if component_id is not None:
                component = self.get(EntityKind.COMPONENT, component_id)
                if component is None:
                    return
                statuses = [s["status"] for s in self.children(EntityKind.STAGE, component_id)]
                self._apply(EntityKind.COMPONENT, component_id, Action.OPTIMISTIC,
                            {"progress": component_progress(statuses)})
                item_id = component["item_id"]

            item = self.get(EntityKind.ITEM, item_id) if item_id else None
            if item is None:
                return
            components = self.children(EntityKind.COMPONENT, item_id)
            self._apply(EntityKind.ITEM, item_id, Action.OPTIMISTIC,
                        {"progress": mean_progress(c.get("progress") for c in components)})
            self._guess_zone(item["zone_id"])
        self._changed()

    def guess_zone_progress(self, zone_id: str):
        with self._lock:
            self._guess_zone(zone_id)
        self._changed()

    # ================================================================
    # Views
    # ================================================================
    def zones(self) -> List[Zone]:
        if self.project_id is None:
            return []
        return [Zone.from_record(r) for r in self.children(EntityKind.ZONE, self.project_id)]

    def items(self, zone_id: str) -> List[Item]:
        return [Item.from_record(r) for r in self.children(EntityKind.ITEM, zone_id)]

    def item(self, item_id: str) -> Optional[Item]:
        record = self.get(EntityKind.ITEM, item_id)
        if record is None:
            return None
        item = Item.from_record(record)
        item.components = self.components(item_id)
        item.stages = [
            Stage.from_record(r, StageOwner.ITEM) for r in self.children(EntityKind.ITEM_STAGE, item_id)
        ]
        return item

    def components(self, item_id: str) -> List[Component]:
        components = []
        for record in self.children(EntityKind.COMPONENT, item_id):
            component = Component.from_record(record)
            component.stages = self.stages(component.id)
            component.materials = [Material.from_record(r) for r in self.children(EntityKind.MATERIAL, component.id)]
            component.parts = [Part.from_record(r) for r in self.children(EntityKind.PART, component.id)]
            components.append(component)
        return components

    def stages(self, component_id: str) -> List[Stage]:
        return [Stage.from_record(r) for r in self.children(EntityKind.STAGE, component_id)]

    # ================================================================
    # Internals (caller holds the lock)
    # ================================================================
    def _apply(self, kind: EntityKind, record_id: str, action: Action, record: Optional[Record] = None):
        entries = self._entries[kind]
        result = reduce_entry(entries.get(record_id), action, record)
        if result is None:
            entries.pop(record_id, None)
        else:
            entries[record_id] = result

    def _replace(self, kind: EntityKind, records: Iterable[Record]):
        fresh = {r["id"]: r for r in records}
        for record_id in list(self._entries[kind]):
            if record_id not in fresh:
                self._entries[kind].pop(record_id)
        for record_id, record in fresh.items():
            self._apply(kind, record_id, Action.CONFIRM, record)

    def _load_component(self, component: Component):
        self._apply(EntityKind.COMPONENT, component.id, Action.CONFIRM, _flat(component))
        for stage in component.stages:
            self._apply(EntityKind.STAGE, stage.id, Action.CONFIRM, _flat(stage))
        for material in component.materials:
            self._apply(EntityKind.MATERIAL, material.id, Action.CONFIRM, _flat(material))
        for part in component.parts:
            self._apply(EntityKind.PART, part.id, Action.CONFIRM, _flat(part))

    def _ids_under(self, kind: EntityKind, parent_id: str) -> List[str]:
        """Ids under a parent, including tombstoned and optimistic-only entries"""
        parent_field = PARENT_FIELDS[kind]
        return [
            record_id for record_id, e in self._entries[kind].items()
            if (e.optimistic or e.confirmed or {}).get(parent_field) == parent_id
        ]

    def _descendants(self, kind: EntityKind, record_id: str):
        if kind is EntityKind.ZONE:
            for item_id in self._ids_under(EntityKind.ITEM, record_id):
                yield EntityKind.ITEM, item_id
                yield from self._descendants(EntityKind.ITEM, item_id)
        elif kind is EntityKind.ITEM:
            for stage_id in self._ids_under(EntityKind.ITEM_STAGE, record_id):
                yield EntityKind.ITEM_STAGE, stage_id
            for component_id in self._ids_under(EntityKind.COMPONENT, record_id):
                yield EntityKind.COMPONENT, component_id
                yield from self._descendants(EntityKind.COMPONENT, component_id)
        elif kind is EntityKind.COMPONENT:
            for child_kind in (EntityKind.STAGE, EntityKind.MATERIAL, EntityKind.PART):
                for child_id in self._ids_under(child_kind, record_id):
                    yield child_kind, child_id

    def _remove_subtree(self, kind: EntityKind, record_id: str):
        for child_kind, child_id in list(self._descendants(kind, record_id)):
            self._entries[child_kind].pop(child_id, None)
        self._entries[kind].pop(record_id, None)

    def _drop_item_children(self, item_id: str):
        for child_kind, child_id in list(self._descendants(EntityKind.ITEM, item_id)):
            self._entries[child_kind].pop(child_id, None)

    def _confirm_progress(self, kind: EntityKind, record_id: str, progress: int):
        entry = self._entries[kind].get(record_id)
        if entry is None:
            return
        self._apply(kind, record_id, Action.CONFIRM_FIELDS, {"progress": progress})

    def _guess_zone(self, zone_id: str):
        if self.get(EntityKind.ZONE, zone_id) is None:
            return
        items = self.children(EntityKind.ITEM, zone_id)
        self._apply(EntityKind.ZONE, zone_id, Action.OPTIMISTIC, {
            "progress": mean_progress(i.get("progress") for i in items),
            "items_count": len(items),
        })

    def _changed(self):
        with self._lock:
            self.version += 1
        for callback in list(self._listeners):
            callback(self)
