import logging
from typing import Any, Dict, Iterable, List, Optional

from database.store import EntityStore, next_position
from errors import RecordNotFoundError, ValidationError
from models.production_models import (
    Component,
    EntityKind,
    Item,
    Material,
    Part,
    ProjectOverview,
    TemplateStrategy,
    Zone,
)
from services.progress_service import CascadeResult, ProgressService, mean_progress
from services.stage_service import StageService, TemplateApplication
from services.template_catalog import ITEM_DEFAULT_STAGES, get_template_by_key

logger = logging.getLogger(__name__)

ZONE_FIELDS = {"name", "color", "position"}
ITEM_FIELDS = {
    "code", "name", "quantity", "unit", "current_stage", "position",
    "materials", "technical_notes", "manager_comment", "due_date",
}
COMPONENT_FIELDS = {"name", "material", "quantity", "unit", "position"}
MATERIAL_FIELDS = {
    "name", "material_type", "thickness", "quantity", "unit", "color",
    "finish", "wood_species", "grade", "brand", "article", "notes",
}
PART_FIELDS = {"name", "quantity", "width", "height", "depth", "material", "notes", "position"}


class ProductionService:
    """
    Production tracking: zones -> items -> components -> stages

    Key responsibilities:
    1. Query operations for the project tree and item/component detail
    2. Structural mutations, each followed by the mandatory recomputation
    3. Stage lifecycle and template seeding (delegated to StageService)
    4. Descriptive materials and parts under components
    """

    def __init__(self, store: EntityStore):
        self.store = store
        self.progress = ProgressService(store)
        self.stages = StageService(store, self.progress)
        logger.info("Production service initialized")

    # ================================================================
    # Queries
    # ================================================================
    def list_zones(self, project_id: str) -> List[Zone]:
        return [Zone.from_record(r) for r in self.store.list(EntityKind.ZONE, project_id)]

    def list_zone_items(self, zone_id: str) -> List[Item]:
        return [Item.from_record(r) for r in self.store.list(EntityKind.ITEM, zone_id)]

    def list_project_items(self, project_id: str) -> List[Item]:
        items = []
        for zone in self.list_zones(project_id):
            items.extend(self.list_zone_items(zone.id))
        return items

    def get_item_detail(self, item_id: str) -> Item:
        """Item with components (stages, materials, parts) and item-level stages"""
        item = Item.from_record(self.store.get(EntityKind.ITEM, item_id))
        item.components = [
            self._with_children(Component.from_record(r))
            for r in self.store.list(EntityKind.COMPONENT, item_id)
        ]
        item.stages = self.stages.list_item_stages(item_id)
        return item

    def get_component_detail(self, component_id: str) -> Component:
        return self._with_children(Component.from_record(self.store.get(EntityKind.COMPONENT, component_id)))

    def get_project_overview(self, project_id: str) -> ProjectOverview:
        """Zones and items with project progress derived on read"""
        zones = self.list_zones(project_id)
        items = []
        for zone in zones:
            items.extend(self.list_zone_items(zone.id))
        return ProjectOverview(
            project_id=project_id,
            progress=mean_progress(i.progress for i in items),
            zones=zones,
            items=items,
        )

    # ================================================================
    # Zones
    # ================================================================
    def create_zone(self, project_id: str, name: str, color: Optional[str] = None) -> Zone:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Zone name is required", {"name": "required"})

        record = self.store.create(EntityKind.ZONE, {
            "project_id": project_id,
            "name": name,
            "color": color,
            "position": next_position(self.store.list(EntityKind.ZONE, project_id)),
            "progress": 0,
            "items_count": 0,
        })
        logger.info(f"Created zone '{name}' in project {project_id}")
        return Zone.from_record(record)

    def update_zone(self, zone_id: str, patch: Dict[str, Any]) -> Zone:
        changes = self._clean_patch("zone", patch, ZONE_FIELDS)
        if "name" in changes and not changes["name"]:
            raise ValidationError("Zone name cannot be empty", {"name": "required"})
        return Zone.from_record(self.store.update(EntityKind.ZONE, zone_id, changes))

    def delete_zone(self, zone_id: str) -> None:
        """Delete a zone with all of its items, components and stages"""
        self.store.delete(EntityKind.ZONE, zone_id)
        logger.info(f"Deleted zone {zone_id}")

    # ================================================================
    # Items
    # ================================================================
    def create_item(self, zone_id: str, data: Dict[str, Any]) -> Item:
        """Create an item, seed its item-level stages and recompute its zone"""
        fields = self._clean_patch("item", data, ITEM_FIELDS)
        for required in ("code", "name"):
            if not fields.get(required):
                raise ValidationError(f"Item {required} is required", {required: "required"})

        zone = self._require_parent(EntityKind.ZONE, zone_id)
        siblings = self.store.list(EntityKind.ITEM, zone_id)
        record = self.store.create(EntityKind.ITEM, {
            "quantity": 1,
            "unit": "шт",
            "current_stage": "not_started",
            "position": next_position(siblings),
            **fields,
            "zone_id": zone_id,
            "project_id": zone["project_id"],
            "progress": 0,
        })
        logger.info(f"Created item {record['code']} '{record['name']}' in zone {zone_id}")

        self.stages.seed_item_stages(record["id"], list(ITEM_DEFAULT_STAGES))
        self.progress.recalculate_zone_progress(zone_id)
        return self.get_item_detail(record["id"])

    def update_item(self, item_id: str, patch: Dict[str, Any]) -> Item:
        changes = self._clean_patch("item", patch, ITEM_FIELDS)
        for required in ("code", "name"):
            if required in changes and not changes[required]:
                raise ValidationError(f"Item {required} cannot be empty", {required: "required"})
        return Item.from_record(self.store.update(EntityKind.ITEM, item_id, changes))

    def delete_item(self, item_id: str) -> Optional[CascadeResult]:
        item = self.store.get(EntityKind.ITEM, item_id)
        self.store.delete(EntityKind.ITEM, item_id)
        logger.info(f"Deleted item {item_id}")

        zone_progress = self.progress.recalculate_zone_progress(item["zone_id"])
        return CascadeResult(None, None, zone_id=item["zone_id"], zone_progress=zone_progress)

    # ================================================================
    # Components
    # ================================================================
    def create_component(self, item_id: str, data: Dict[str, Any],
                         template_key: Optional[str] = None) -> Component:
        """Create a component, optionally seeded from a stage template"""
        fields = self._clean_patch("component", data, COMPONENT_FIELDS)
        if not fields.get("name"):
            raise ValidationError("Component name is required", {"name": "required"})

        template = None
        if template_key:
            template = get_template_by_key(template_key)
            if template is None:
                raise ValidationError(f"Unknown stage template: '{template_key}'",
                                      {"template_key": template_key})
        self._require_parent(EntityKind.ITEM, item_id)

        record = self.store.create(EntityKind.COMPONENT, {
            "quantity": 1,
            "unit": template.default_unit if template else "шт",
            "material": (template.default_material or None) if template else None,
            "position": next_position(self.store.list(EntityKind.COMPONENT, item_id)),
            **fields,
            "item_id": item_id,
            "progress": 0,
        })
        logger.info(f"Created component '{record['name']}' on item {item_id}")

        if template is not None:
            self.stages.instantiate_from_template(record["id"], template.key, TemplateStrategy.REPLACE)
        else:
            self.progress.recalculate_cascade(record["id"])
        return self.get_component_detail(record["id"])

    def update_component(self, component_id: str, patch: Dict[str, Any]) -> Component:
        changes = self._clean_patch("component", patch, COMPONENT_FIELDS)
        if "name" in changes and not changes["name"]:
            raise ValidationError("Component name cannot be empty", {"name": "required"})
        return Component.from_record(self.store.update(EntityKind.COMPONENT, component_id, changes))

    def delete_component(self, component_id: str) -> CascadeResult:
        """Delete a component and recompute its item and zone"""
        component = self.store.get(EntityKind.COMPONENT, component_id)
        self.store.delete(EntityKind.COMPONENT, component_id)
        logger.info(f"Deleted component {component_id}")
        return self.progress.recalculate_item_cascade(component["item_id"])

    def change_material_type(self, component_id: str, template_key: str,
                             strategy=TemplateStrategy.MERGE) -> TemplateApplication:
        """Explicit reseed of a component's stages from another template"""
        return self.stages.instantiate_from_template(component_id, template_key, strategy)

    # ================================================================
    # Materials and parts
    # ================================================================
    def list_materials(self, component_id: str) -> List[Material]:
        return [Material.from_record(r) for r in self.store.list(EntityKind.MATERIAL, component_id)]

    def add_material(self, component_id: str, data: Dict[str, Any]) -> Material:
        fields = self._clean_patch("material", data, MATERIAL_FIELDS)
        if not fields.get("name"):
            raise ValidationError("Material name is required", {"name": "required"})
        self._require_parent(EntityKind.COMPONENT, component_id)
        return Material.from_record(self.store.create(EntityKind.MATERIAL, {**fields, "component_id": component_id}))

    def update_material(self, material_id: str, patch: Dict[str, Any]) -> Material:
        changes = self._clean_patch("material", patch, MATERIAL_FIELDS)
        return Material.from_record(self.store.update(EntityKind.MATERIAL, material_id, changes))

    def delete_material(self, material_id: str) -> None:
        self.store.delete(EntityKind.MATERIAL, material_id)

    def list_parts(self, component_id: str) -> List[Part]:
        return [Part.from_record(r) for r in self.store.list(EntityKind.PART, component_id)]

    def add_part(self, component_id: str, data: Dict[str, Any]) -> Part:
        fields = self._clean_patch("part", data, PART_FIELDS)
        if not fields.get("name"):
            raise ValidationError("Part name is required", {"name": "required"})
        if float(fields.get("quantity", 1)) <= 0:
            raise ValidationError("Part quantity must be positive", {"quantity": "must be > 0"})
        self._require_parent(EntityKind.COMPONENT, component_id)

        siblings = self.store.list(EntityKind.PART, component_id)
        record = self.store.create(EntityKind.PART, {
            "position": next_position(siblings),
            **fields,
            "component_id": component_id,
        })
        return Part.from_record(record)

    def update_part(self, part_id: str, patch: Dict[str, Any]) -> Part:
        changes = self._clean_patch("part", patch, PART_FIELDS)
        return Part.from_record(self.store.update(EntityKind.PART, part_id, changes))

    def delete_part(self, part_id: str) -> None:
        self.store.delete(EntityKind.PART, part_id)

    # ================================================================
    # Helpers
    # ================================================================
    def _with_children(self, component: Component) -> Component:
        component.stages = self.stages.list_stages(component.id)
        component.materials = self.list_materials(component.id)
        component.parts = self.list_parts(component.id)
        return component

    def _require_parent(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        try:
            return self.store.get(kind, record_id)
        except RecordNotFoundError:
            raise ValidationError(f"{kind.value} {record_id} does not exist", {"id": record_id})

    @staticmethod
    def _clean_patch(label: str, patch: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
        """Reject derived or unknown fields; blank free text becomes None"""
        unknown = sorted(set(patch) - set(allowed))
        if unknown:
            raise ValidationError(
                f"{label.capitalize()} fields cannot be set: {', '.join(unknown)}",
                {name: "not editable" for name in unknown},
            )

        cleaned = {}
        for key, value in patch.items():
            if isinstance(value, str):
                value = value.strip() or None
            cleaned[key] = value

        if "quantity" in cleaned and cleaned["quantity"] is not None and float(cleaned["quantity"]) <= 0:
            raise ValidationError(f"{label.capitalize()} quantity must be positive", {"quantity": "must be > 0"})
        return cleaned
