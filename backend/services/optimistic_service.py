import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from database.store import next_position
from errors import RecordNotFoundError
from models.production_models import (
    EntityKind,
    StageOwner,
    StageStatus,
    TemplateStrategy,
    status_color,
)
from services.error_reporter import ErrorReporter
from services.mirror import Action, ProductionMirror
from services.production_service import ProductionService
from services.stage_service import parse_status
from services.template_catalog import get_template_by_key

logger = logging.getLogger(__name__)


def temp_id() -> str:
    return f"tmp-{uuid.uuid4()}"


class OptimisticMutationLayer:
    """
    Mutations as a viewer sees them

    Every mutation is applied to the mirror first, then sent to the
    production service. On success the authoritative records and
    aggregates replace the guesses. On failure the guesses are dropped,
    the affected subtree is refetched, the error is reported and then
    re-raised to the caller.
    """

    def __init__(self, service: ProductionService, mirror: ProductionMirror,
                 errors: Optional[ErrorReporter] = None):
        self.service = service
        self.mirror = mirror
        self.errors = errors if errors is not None else ErrorReporter()

    # ================================================================
    # Component stages
    # ================================================================
    def update_stage(self, stage_id: str, patch: Dict[str, Any]):
        stage = self.mirror.get(EntityKind.STAGE, stage_id)
        component_id = stage["component_id"] if stage else None

        def apply():
            if stage is None:
                return
            guess = dict(patch)
            if "status" in guess:
                guess["color"] = status_color(parse_status(StageOwner.COMPONENT, guess["status"]))
            self.mirror.dispatch(EntityKind.STAGE, stage_id, Action.OPTIMISTIC, guess)
            if "status" in guess:
                self.mirror.guess_progress(component_id=component_id)

        def confirm(change):
            self.mirror.dispatch(EntityKind.STAGE, stage_id, Action.CONFIRM, _record(change.stage))
            self.mirror.apply_cascade(change.cascade)

        return self._run("update stage", self._item_of_component(component_id), apply,
                         lambda: self.service.stages.update_stage(stage_id, patch), confirm)

    def add_stage(self, component_id: str, definition: Dict[str, Any]):
        placeholder = temp_id()

        def apply():
            siblings = self.mirror.children(EntityKind.STAGE, component_id)
            status = parse_status(StageOwner.COMPONENT, definition.get("status") or StageStatus.PENDING)
            self.mirror.dispatch(EntityKind.STAGE, placeholder, Action.OPTIMISTIC, {
                "id": placeholder,
                "component_id": component_id,
                "name": definition.get("key") or definition.get("name"),
                "custom_label": definition.get("custom_label"),
                "status": status.value,
                "color": status_color(status),
                "position": next_position(siblings),
            })
            self.mirror.guess_progress(component_id=component_id)

        def confirm(change):
            self.mirror.dispatch(EntityKind.STAGE, placeholder, Action.REMOVE)
            self.mirror.dispatch(EntityKind.STAGE, change.stage.id, Action.CONFIRM, _record(change.stage))
            self.mirror.apply_cascade(change.cascade)

        return self._run("add stage", self._item_of_component(component_id), apply,
                         lambda: self.service.stages.add_stage(component_id, definition), confirm)

    def delete_stage(self, stage_id: str):
        stage = self.mirror.get(EntityKind.STAGE, stage_id)
        component_id = stage["component_id"] if stage else None

        def apply():
            if stage is None:
                return
            self.mirror.dispatch(EntityKind.STAGE, stage_id, Action.DELETE)
            self.mirror.guess_progress(component_id=component_id)

        def confirm(change):
            self.mirror.dispatch(EntityKind.STAGE, stage_id, Action.REMOVE)
            self.mirror.apply_cascade(change.cascade)

        return self._run("delete stage", self._item_of_component(component_id), apply,
                         lambda: self.service.stages.delete_stage(stage_id), confirm)

    def move_stage_up(self, component_id: str, stage_id: str) -> bool:
        return self._move("move stage up", component_id, stage_id, -1)

    def move_stage_down(self, component_id: str, stage_id: str) -> bool:
        return self._move("move stage down", component_id, stage_id, 1)

    def reorder_stages(self, component_id: str, stage_ids: List[str]):
        def apply():
            for position, stage_id in enumerate(stage_ids):
                if self.mirror.get(EntityKind.STAGE, stage_id) is not None:
                    self.mirror.dispatch(EntityKind.STAGE, stage_id, Action.OPTIMISTIC, {"position": position})

        return self._run("reorder stages", self._item_of_component(component_id), apply,
                         lambda: self.service.stages.reorder_stages(component_id, stage_ids),
                         lambda stages: self.mirror.load_stages(component_id, stages))

    def apply_template(self, component_id: str, template_key: str,
                       strategy=TemplateStrategy.REPLACE):
        def apply():
            template = get_template_by_key(template_key)
            if template is None or strategy not in set(TemplateStrategy):
                return
            existing = self.mirror.children(EntityKind.STAGE, component_id)
            present = {s["name"] for s in existing}
            if TemplateStrategy(strategy) is TemplateStrategy.REPLACE:
                for stage in existing:
                    self.mirror.dispatch(EntityKind.STAGE, stage["id"], Action.DELETE)
                present, position = set(), 0
            else:
                position = len(existing)
            for definition in template.stages:
                if definition.key in present:
                    continue
                placeholder = temp_id()
                self.mirror.dispatch(EntityKind.STAGE, placeholder, Action.OPTIMISTIC, {
                    "id": placeholder,
                    "component_id": component_id,
                    "name": definition.key,
                    "status": StageStatus.PENDING.value,
                    "position": position,
                })
                position += 1
            self.mirror.guess_progress(component_id=component_id)

        def confirm(application):
            self.mirror.load_stages(component_id, application.stages)
            self.mirror.apply_cascade(application.cascade)

        return self._run(
            "apply template", self._item_of_component(component_id), apply,
            lambda: self.service.stages.instantiate_from_template(component_id, template_key, strategy),
            confirm,
        )

    # ================================================================
    # Item-level stages
    # ================================================================
    def update_item_stage(self, stage_id: str, patch: Dict[str, Any]):
        stage = self.mirror.get(EntityKind.ITEM_STAGE, stage_id)

        def apply():
            if stage is not None:
                self.mirror.dispatch(EntityKind.ITEM_STAGE, stage_id, Action.OPTIMISTIC, dict(patch))

        return self._run(
            "update item stage", stage["item_id"] if stage else None, apply,
            lambda: self.service.stages.update_item_stage(stage_id, patch),
            lambda change: self.mirror.dispatch(EntityKind.ITEM_STAGE, stage_id, Action.CONFIRM,
                                                _record(change.stage)),
        )

    # ================================================================
    # Components
    # ================================================================
    def create_component(self, item_id: str, data: Dict[str, Any], template_key: Optional[str] = None):
        placeholder = temp_id()

        def apply():
            siblings = self.mirror.children(EntityKind.COMPONENT, item_id)
            self.mirror.dispatch(EntityKind.COMPONENT, placeholder, Action.OPTIMISTIC, {
                **data,
                "id": placeholder,
                "item_id": item_id,
                "progress": 0,
                "position": len(siblings),
            })
            self.mirror.guess_progress(item_id=item_id)

        def confirm(component):
            self.mirror.dispatch(EntityKind.COMPONENT, placeholder, Action.REMOVE)
            self._reload_item(item_id)

        return self._run("create component", item_id, apply,
                         lambda: self.service.create_component(item_id, data, template_key), confirm)

    def update_component(self, component_id: str, patch: Dict[str, Any]):
        def apply():
            if self.mirror.get(EntityKind.COMPONENT, component_id) is not None:
                self.mirror.dispatch(EntityKind.COMPONENT, component_id, Action.OPTIMISTIC, dict(patch))

        def confirm(component):
            self.mirror.dispatch(EntityKind.COMPONENT, component_id, Action.CONFIRM, _record(component))

        return self._run("update component", self._item_of_component(component_id), apply,
                         lambda: self.service.update_component(component_id, patch), confirm)

    def delete_component(self, component_id: str):
        item_id = self._item_of_component(component_id)

        def apply():
            self.mirror.delete_subtree(EntityKind.COMPONENT, component_id)
            if item_id:
                self.mirror.guess_progress(item_id=item_id)

        def confirm(cascade):
            self.mirror.remove_subtree(EntityKind.COMPONENT, component_id)
            self.mirror.apply_cascade(cascade)

        return self._run("delete component", item_id, apply,
                         lambda: self.service.delete_component(component_id), confirm)

    # ================================================================
    # Items and zones
    # ================================================================
    def create_item(self, zone_id: str, data: Dict[str, Any]):
        placeholder = temp_id()

        def apply():
            siblings = self.mirror.children(EntityKind.ITEM, zone_id)
            self.mirror.dispatch(EntityKind.ITEM, placeholder, Action.OPTIMISTIC, {
                **data,
                "id": placeholder,
                "zone_id": zone_id,
                "project_id": self.mirror.project_id,
                "progress": 0,
                "position": len(siblings),
            })
            self.mirror.guess_zone_progress(zone_id)

        def confirm(item):
            self.mirror.dispatch(EntityKind.ITEM, placeholder, Action.REMOVE)
            self.mirror.load_item_detail(item)
            self._reload_zones()

        return self._run("create item", None, apply,
                         lambda: self.service.create_item(zone_id, data), confirm)

    def update_item(self, item_id: str, patch: Dict[str, Any]):
        def apply():
            if self.mirror.get(EntityKind.ITEM, item_id) is not None:
                self.mirror.dispatch(EntityKind.ITEM, item_id, Action.OPTIMISTIC, dict(patch))

        def confirm(item):
            self.mirror.dispatch(EntityKind.ITEM, item_id, Action.CONFIRM, _record(item))

        return self._run("update item", item_id, apply,
                         lambda: self.service.update_item(item_id, patch), confirm)

    def delete_item(self, item_id: str):
        item = self.mirror.get(EntityKind.ITEM, item_id)

        def apply():
            self.mirror.delete_subtree(EntityKind.ITEM, item_id)
            if item is not None:
                self.mirror.guess_zone_progress(item["zone_id"])

        def confirm(cascade):
            self.mirror.remove_subtree(EntityKind.ITEM, item_id)
            self.mirror.apply_cascade(cascade)
            self._reload_zones()

        return self._run("delete item", None, apply,
                         lambda: self.service.delete_item(item_id), confirm)

    def create_zone(self, name: str, color: Optional[str] = None):
        placeholder = temp_id()
        project_id = self.mirror.project_id

        def apply():
            siblings = self.mirror.children(EntityKind.ZONE, project_id)
            self.mirror.dispatch(EntityKind.ZONE, placeholder, Action.OPTIMISTIC, {
                "id": placeholder,
                "project_id": project_id,
                "name": name,
                "color": color,
                "position": len(siblings),
                "progress": 0,
                "items_count": 0,
            })

        def confirm(zone):
            self.mirror.dispatch(EntityKind.ZONE, placeholder, Action.REMOVE)
            self.mirror.dispatch(EntityKind.ZONE, zone.id, Action.CONFIRM, _record(zone))

        return self._run("create zone", None, apply,
                         lambda: self.service.create_zone(project_id, name, color), confirm)

    def update_zone(self, zone_id: str, patch: Dict[str, Any]):
        def apply():
            if self.mirror.get(EntityKind.ZONE, zone_id) is not None:
                self.mirror.dispatch(EntityKind.ZONE, zone_id, Action.OPTIMISTIC, dict(patch))

        return self._run(
            "update zone", None, apply,
            lambda: self.service.update_zone(zone_id, patch),
            lambda zone: self.mirror.dispatch(EntityKind.ZONE, zone_id, Action.CONFIRM, _record(zone)),
        )

    def delete_zone(self, zone_id: str):
        return self._run(
            "delete zone", None,
            lambda: self.mirror.delete_subtree(EntityKind.ZONE, zone_id),
            lambda: self.service.delete_zone(zone_id),
            lambda _: self.mirror.remove_subtree(EntityKind.ZONE, zone_id),
        )

    # ================================================================
    # Materials and parts
    # ================================================================
    def add_material(self, component_id: str, data: Dict[str, Any]):
        return self._add_child(EntityKind.MATERIAL, "add material", component_id, data,
                               lambda: self.service.add_material(component_id, data))

    def update_material(self, material_id: str, patch: Dict[str, Any]):
        return self._update_child(EntityKind.MATERIAL, "update material", material_id, patch,
                                  lambda: self.service.update_material(material_id, patch))

    def delete_material(self, material_id: str):
        return self._delete_child(EntityKind.MATERIAL, "delete material", material_id,
                                  lambda: self.service.delete_material(material_id))

    def add_part(self, component_id: str, data: Dict[str, Any]):
        return self._add_child(EntityKind.PART, "add part", component_id, data,
                               lambda: self.service.add_part(component_id, data))

    def update_part(self, part_id: str, patch: Dict[str, Any]):
        return self._update_child(EntityKind.PART, "update part", part_id, patch,
                                  lambda: self.service.update_part(part_id, patch))

    def delete_part(self, part_id: str):
        return self._delete_child(EntityKind.PART, "delete part", part_id,
                                  lambda: self.service.delete_part(part_id))

    # ================================================================
    # Shared implementation
    # ================================================================
    def _run(self, context: str, item_id: Optional[str], apply: Callable[[], None],
             commit: Callable[[], Any], confirm: Callable[[Any], None]):
        """Apply locally, commit remotely, then confirm or roll back"""
        try:
            apply()
            result = commit()
            confirm(result)
        except Exception as e:
            logger.warning(f"OPTIMISTIC: '{context}' rejected, restoring from store: {e}")
            self._recover(context, item_id)
            self.errors.report(e, context)
            raise
        return result

    def _recover(self, context: str, item_id: Optional[str]):
        """Drop guesses and refetch what the failed mutation touched"""
        try:
            if item_id is not None:
                self.mirror.discard_item_subtree(item_id)
                self._reload_item(item_id)
            else:
                self.mirror.discard_all()
                self._reload_zones()
        except Exception as e:
            logger.exception(f"OPTIMISTIC: refetch after '{context}' failed")
            self.errors.report(e, f"{context} (refetch)")

    def _reload_item(self, item_id: str):
        try:
            self.mirror.load_item_detail(self.service.get_item_detail(item_id))
        except RecordNotFoundError:
            self.mirror.remove_subtree(EntityKind.ITEM, item_id)
            return
        self._reload_zones()

    def _reload_zones(self):
        if self.mirror.project_id is None:
            return
        project_id = self.mirror.project_id
        self.mirror.load_project(self.service.list_zones(project_id), self.service.list_project_items(project_id))

    def _move(self, context: str, component_id: str, stage_id: str, offset: int) -> bool:
        def apply():
            stages = self.mirror.children(EntityKind.STAGE, component_id)
            index = next((i for i, s in enumerate(stages) if s["id"] == stage_id), None)
            if index is None or not 0 <= index + offset < len(stages):
                return
            current, neighbour = stages[index], stages[index + offset]
            self.mirror.dispatch(EntityKind.STAGE, current["id"], Action.OPTIMISTIC,
                                 {"position": neighbour["position"]})
            self.mirror.dispatch(EntityKind.STAGE, neighbour["id"], Action.OPTIMISTIC,
                                 {"position": current["position"]})

        def commit():
            if offset < 0:
                return self.service.stages.move_stage_up(component_id, stage_id)
            return self.service.stages.move_stage_down(component_id, stage_id)

        def confirm(_moved):
            self.mirror.load_stages(component_id, self.service.stages.list_stages(component_id))

        return self._run(context, self._item_of_component(component_id), apply, commit, confirm)

    def _add_child(self, kind: EntityKind, context: str, component_id: str,
                   data: Dict[str, Any], commit: Callable[[], Any]):
        placeholder = temp_id()

        def apply():
            self.mirror.dispatch(kind, placeholder, Action.OPTIMISTIC,
                                 {**data, "id": placeholder, "component_id": component_id})

        def confirm(record):
            self.mirror.dispatch(kind, placeholder, Action.REMOVE)
            self.mirror.dispatch(kind, record.id, Action.CONFIRM, _record(record))

        return self._run(context, self._item_of_component(component_id), apply, commit, confirm)

    def _update_child(self, kind: EntityKind, context: str, record_id: str,
                      patch: Dict[str, Any], commit: Callable[[], Any]):
        existing = self.mirror.get(kind, record_id)

        def apply():
            if existing is not None:
                self.mirror.dispatch(kind, record_id, Action.OPTIMISTIC, dict(patch))

        return self._run(
            context, self._item_of_component(existing["component_id"] if existing else None), apply,
            commit, lambda record: self.mirror.dispatch(kind, record_id, Action.CONFIRM, _record(record)),
        )

    def _delete_child(self, kind: EntityKind, context: str, record_id: str, commit: Callable[[], Any]):
        existing = self.mirror.get(kind, record_id)

        def apply():
            if existing is not None:
                self.mirror.dispatch(kind, record_id, Action.DELETE)

        return self._run(
            context, self._item_of_component(existing["component_id"] if existing else None), apply,
            commit, lambda _: self.mirror.dispatch(kind, record_id, Action.REMOVE),
        )

    def _item_of_component(self, component_id: Optional[str]) -> Optional[str]:
        if component_id is None:
            return None
        entry = self.mirror.entry(EntityKind.COMPONENT, component_id)
        if entry is None:
            return None
        return (entry.optimistic or entry.confirmed or {}).get("item_id")


def _record(model) -> Dict[str, Any]:
    return {k: v for k, v in model.to_dict().items() if not isinstance(v, list)}
