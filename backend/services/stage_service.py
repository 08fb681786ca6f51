import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database.store import EntityStore, next_position
from errors import RecordNotFoundError, ValidationError
from models.production_models import (
    EntityKind,
    Stage,
    StageOwner,
    StageStatus,
    TemplateStrategy,
    status_color,
)
from services.progress_service import CascadeResult, ProgressService
from services.template_catalog import StageDefinition, get_template_by_key

logger = logging.getLogger(__name__)

# Fields a caller may set on a stage; position changes go through reorder/move
EDITABLE_FIELDS = {
    "name",
    "custom_label",
    "status",
    "assignee_id",
    "estimated_hours",
    "actual_hours",
    "notes",
    "due_date",
}


@dataclass
class StageChange:
    """Outcome of a single-stage mutation"""
    stage: Optional[Stage]
    cascade: Optional[CascadeResult] = None


@dataclass
class TemplateApplication:
    """Outcome of seeding or reseeding a component from a template"""
    component_id: str
    template_key: str
    strategy: TemplateStrategy
    stages: List[Stage] = field(default_factory=list)
    created: int = 0
    kept: int = 0
    removed: int = 0
    cascade: Optional[CascadeResult] = None

    def to_dict(self):
        return {
            "component_id": self.component_id,
            "template_key": self.template_key,
            "strategy": self.strategy.value,
            "stages": [s.to_dict() for s in self.stages],
            "created": self.created,
            "kept": self.kept,
            "removed": self.removed,
            "cascade": self.cascade.to_dict() if self.cascade else None,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_status(owner: StageOwner, value: Any) -> StageStatus:
    """Any status may be set from any other; only membership is checked"""
    try:
        status = StageStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown stage status: '{value}'", {"status": str(value)})
    if status not in owner.allowed_statuses:
        raise ValidationError(
            f"Status '{status.value}' is not available for {owner.value}-level stages",
            {"status": status.value},
        )
    return status


def status_fields(status: StageStatus, existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Columns written together with a status: color and work timestamps"""
    existing = existing or {}
    now = _now()
    fields = {"status": status.value, "color": status_color(status)}
    if status is not StageStatus.PENDING and not existing.get("started_at"):
        fields["started_at"] = now
    if status is StageStatus.COMPLETED:
        if not existing.get("completed_at"):
            fields["completed_at"] = now
    elif existing.get("completed_at"):
        fields["completed_at"] = None
    return fields


class StageService:
    """
    Stage lifecycle for component stages and the lighter item-level stages

    Component stage mutations that can change the completed fraction
    (add, delete, status change, template reseed) finish with a progress
    cascade. Item-level stages are informational and never cascade.
    """

    def __init__(self, store: EntityStore, progress: ProgressService):
        self.store = store
        self.progress = progress

    # ================================================================
    # Component stages
    # ================================================================
    def list_stages(self, component_id: str) -> List[Stage]:
        return [Stage.from_record(r) for r in self.store.list(EntityKind.STAGE, component_id)]

    def add_stage(self, component_id: str, definition: Dict[str, Any]) -> StageChange:
        return self._add(StageOwner.COMPONENT, component_id, definition)

    def update_stage(self, stage_id: str, patch: Dict[str, Any]) -> StageChange:
        return self._update(StageOwner.COMPONENT, stage_id, patch)

    def delete_stage(self, stage_id: str) -> StageChange:
        """Remove a stage; sibling positions are left as they are"""
        return self._delete(StageOwner.COMPONENT, stage_id)

    def move_stage_up(self, component_id: str, stage_id: str) -> bool:
        return self._move(component_id, stage_id, -1)

    def move_stage_down(self, component_id: str, stage_id: str) -> bool:
        return self._move(component_id, stage_id, 1)

    def reorder_stages(self, component_id: str, stage_ids: List[str]) -> List[Stage]:
        """Renumber all stages 0..N-1 in the given order"""
        stages = self.store.list(EntityKind.STAGE, component_id)
        by_id = {s["id"]: s for s in stages}
        if len(stage_ids) != len(by_id) or set(stage_ids) != set(by_id):
            raise ValidationError(
                "Stage order must list every stage of the component exactly once",
                {"stage_ids": f"expected {len(by_id)} ids"},
            )
        return self._renumber([by_id[sid] for sid in stage_ids])

    def compact_stage_positions(self, component_id: str) -> List[Stage]:
        """Close position gaps left by deletions, keeping the current order"""
        return self._renumber(self.store.list(EntityKind.STAGE, component_id))

    def instantiate_from_template(self, component_id: str, template_key: str,
                                  strategy=TemplateStrategy.REPLACE) -> TemplateApplication:
        """
        Seed a component's stages from a template

        replace: drop every existing stage, create the template's stages
        in order, all pending.
        merge: keep existing stages (status and notes included), append a
        pending stage for each template key not present yet. Stages whose
        key is absent from the template are kept.
        """
        strategy = self._parse_strategy(strategy)
        template = get_template_by_key(template_key)
        if template is None:
            raise ValidationError(f"Unknown stage template: '{template_key}'", {"template_key": str(template_key)})
        self._require(EntityKind.COMPONENT, component_id)

        existing = self.store.list(EntityKind.STAGE, component_id)
        result = TemplateApplication(component_id, template.key, strategy)

        if strategy is TemplateStrategy.REPLACE:
            for stage in existing:
                self.store.delete(EntityKind.STAGE, stage["id"])
            created = [
                self.store.create(EntityKind.STAGE, self._record_from_definition(component_id, d, i))
                for i, d in enumerate(template.stages)
            ]
            result.stages = [Stage.from_record(r) for r in created]
            result.created = len(created)
            result.removed = len(existing)
        else:
            ordered = list(existing)
            present = {s["name"] for s in existing}
            for definition in template.stages:
                if definition.key in present:
                    continue
                ordered.append(self.store.create(
                    EntityKind.STAGE,
                    self._record_from_definition(component_id, definition, next_position(ordered)),
                ))
                present.add(definition.key)
                result.created += 1
            result.kept = len(existing)
            result.stages = self._renumber(ordered)

        logger.info(
            f"TEMPLATE: {strategy.value} '{template.key}' on component {component_id} "
            f"(created={result.created}, kept={result.kept}, removed={result.removed})"
        )
        result.cascade = self.progress.recalculate_cascade(component_id)
        return result

    # ================================================================
    # Item-level stages
    # ================================================================
    def list_item_stages(self, item_id: str) -> List[Stage]:
        return [Stage.from_record(r, StageOwner.ITEM) for r in self.store.list(EntityKind.ITEM_STAGE, item_id)]

    def add_item_stage(self, item_id: str, definition: Dict[str, Any]) -> StageChange:
        return self._add(StageOwner.ITEM, item_id, definition)

    def update_item_stage(self, stage_id: str, patch: Dict[str, Any]) -> StageChange:
        return self._update(StageOwner.ITEM, stage_id, patch)

    def delete_item_stage(self, stage_id: str) -> StageChange:
        return self._delete(StageOwner.ITEM, stage_id)

    def seed_item_stages(self, item_id: str, definitions: List[StageDefinition]) -> List[Stage]:
        records = [
            self.store.create(EntityKind.ITEM_STAGE, {
                "item_id": item_id,
                "name": d.key,
                "position": i,
                **status_fields(StageStatus.PENDING),
            })
            for i, d in enumerate(definitions)
        ]
        return [Stage.from_record(r, StageOwner.ITEM) for r in records]

    # ================================================================
    # Shared implementation
    # ================================================================
    def _add(self, owner: StageOwner, owner_id: str, definition: Dict[str, Any]) -> StageChange:
        data = dict(definition)
        name = (data.pop("key", None) or data.get("name") or "").strip()
        if not name:
            raise ValidationError("Stage name is required", {"name": "required"})
        self._reject_unknown(data)

        status = parse_status(owner, data.pop("status", None) or StageStatus.PENDING)
        parent_kind = EntityKind.COMPONENT if owner is StageOwner.COMPONENT else EntityKind.ITEM
        self._require(parent_kind, owner_id)

        # Always appended; placement changes go through reorder/move
        position = next_position(self.store.list(owner.kind, owner_id))
        record = {
            **data,
            owner.parent_field: owner_id,
            "name": name,
            "position": position,
            **status_fields(status),
        }
        created = self.store.create(owner.kind, record)
        logger.info(f"Added {owner.value} stage '{name}' to {owner_id} at position {position}")

        stage = Stage.from_record(created, owner)
        cascade = self._cascade(owner, owner_id)
        return StageChange(stage, cascade)

    def _update(self, owner: StageOwner, stage_id: str, patch: Dict[str, Any]) -> StageChange:
        self._reject_unknown(patch)
        if "name" in patch and not (patch["name"] or "").strip():
            raise ValidationError("Stage name cannot be empty", {"name": "required"})

        existing = self._require(owner.kind, stage_id)
        changes = dict(patch)
        if "status" in changes:
            status = parse_status(owner, changes.pop("status"))
            changes.update(status_fields(status, existing))

        updated = self.store.update(owner.kind, stage_id, changes)
        logger.debug(f"Updated {owner.value} stage {stage_id}: {sorted(patch)}")

        stage = Stage.from_record(updated, owner)
        cascade = self._cascade(owner, stage.owner_id) if "status" in patch else None
        return StageChange(stage, cascade)

    def _delete(self, owner: StageOwner, stage_id: str) -> StageChange:
        existing = self._require(owner.kind, stage_id)
        self.store.delete(owner.kind, stage_id)
        logger.info(f"Deleted {owner.value} stage {stage_id}")
        return StageChange(None, self._cascade(owner, existing[owner.parent_field]))

    def _move(self, component_id: str, stage_id: str, offset: int) -> bool:
        """Swap positions with the adjacent sibling; False at either end"""
        stages = self.store.list(EntityKind.STAGE, component_id)
        index = next((i for i, s in enumerate(stages) if s["id"] == stage_id), None)
        if index is None:
            raise ValidationError(f"Stage {stage_id} does not belong to component {component_id}",
                                  {"stage_id": stage_id})

        target = index + offset
        if target < 0 or target >= len(stages):
            return False

        current, neighbour = stages[index], stages[target]
        self.store.update(EntityKind.STAGE, current["id"], {"position": neighbour["position"]})
        self.store.update(EntityKind.STAGE, neighbour["id"], {"position": current["position"]})
        return True

    def _renumber(self, ordered: List[Dict[str, Any]]) -> List[Stage]:
        stages = []
        for position, record in enumerate(ordered):
            if record.get("position") != position:
                record = self.store.update(EntityKind.STAGE, record["id"], {"position": position})
            stages.append(Stage.from_record(record))
        return stages

    def _cascade(self, owner: StageOwner, owner_id: str) -> Optional[CascadeResult]:
        if owner is StageOwner.COMPONENT:
            return self.progress.recalculate_cascade(owner_id)
        return None

    def _require(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        try:
            return self.store.get(kind, record_id)
        except RecordNotFoundError:
            raise ValidationError(f"{kind.value} {record_id} does not exist", {"id": record_id})

    @staticmethod
    def _record_from_definition(component_id: str, definition: StageDefinition, position: int) -> Dict[str, Any]:
        return {
            "component_id": component_id,
            "name": definition.key,
            "position": position,
            "estimated_hours": definition.estimated_hours,
            **status_fields(StageStatus.PENDING),
        }

    @staticmethod
    def _parse_strategy(strategy) -> TemplateStrategy:
        try:
            return TemplateStrategy(strategy)
        except ValueError:
            raise ValidationError(f"Unknown template strategy: '{strategy}'", {"strategy": str(strategy)})

    @staticmethod
    def _reject_unknown(data: Dict[str, Any]):
        unknown = sorted(set(data) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Stage fields cannot be set: {', '.join(unknown)}",
                {name: "not editable" for name in unknown},
            )
