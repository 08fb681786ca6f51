"""
Production service tests.

Tests cover:
  - Kitchen scenario: ЛДСП component completed stage by stage
  - Zone / item / component CRUD with mandatory recomputation
  - Deleting the only component resets its item
  - Cascade delete of a zone
  - Materials and parts
  - Patch validation (derived fields, blanks, quantities)
  - Project overview with derived progress
"""
import pytest

from conftest import PROJECT_ID, progress_of
from errors import RecordNotFoundError, ValidationError
from models.production_models import EntityKind


# ═════════════════════════════════════════════════════════════════════════
# SCENARIO
# ═════════════════════════════════════════════════════════════════════════

class TestKitchenScenario:
    def test_progress_sequence(self, service, store):
        zone = service.create_zone(PROJECT_ID, "Кухня")
        item = service.create_item(zone.id, {"code": "K-01", "name": "Нижний модуль"})
        component = service.create_component(item.id, {"name": "Корпус"}, template_key="ЛДСП")

        assert len(component.stages) == 7
        assert component.material == "ЛДСП 18мм"

        seen = [component.progress]
        for stage in component.stages:
            change = service.stages.update_stage(stage.id, {"status": "completed"})
            seen.append(change.cascade.component_progress)
            assert change.cascade.item_progress == change.cascade.component_progress
            assert change.cascade.zone_progress == change.cascade.component_progress

        assert seen == [0, 14, 29, 43, 57, 71, 86, 100]
        assert progress_of(store, EntityKind.ZONE, zone.id) == 100

    def test_unknown_template_writes_nothing(self, service, item):
        with pytest.raises(ValidationError):
            service.create_component(item.id, {"name": "Корпус"}, template_key="granite")
        assert service.get_item_detail(item.id).components == []


# ═════════════════════════════════════════════════════════════════════════
# ZONES
# ═════════════════════════════════════════════════════════════════════════

class TestZones:
    def test_create_positions(self, service):
        first = service.create_zone(PROJECT_ID, "Кухня")
        second = service.create_zone(PROJECT_ID, "Спальня", color="#aabbcc")
        assert (first.position, second.position) == (0, 1)
        assert second.color == "#aabbcc"
        assert first.progress == 0 and first.items_count == 0

    def test_create_requires_name(self, service):
        with pytest.raises(ValidationError):
            service.create_zone(PROJECT_ID, "   ")

    def test_update(self, service, zone):
        assert service.update_zone(zone.id, {"name": "Кухня-гостиная"}).name == "Кухня-гостиная"

    def test_update_rejects_progress(self, service, zone):
        with pytest.raises(ValidationError):
            service.update_zone(zone.id, {"progress": 100})

    def test_update_rejects_blank_name(self, service, zone):
        with pytest.raises(ValidationError):
            service.update_zone(zone.id, {"name": " "})

    def test_delete_cascades(self, service, store, zone, item, component):
        stage_id = component.stages[0].id
        service.delete_zone(zone.id)

        assert service.list_zones(PROJECT_ID) == []
        for kind, record_id in (
            (EntityKind.ITEM, item.id),
            (EntityKind.COMPONENT, component.id),
            (EntityKind.STAGE, stage_id),
        ):
            with pytest.raises(RecordNotFoundError):
                store.get(kind, record_id)


# ═════════════════════════════════════════════════════════════════════════
# ITEMS
# ═════════════════════════════════════════════════════════════════════════

class TestItems:
    def test_create_inherits_project(self, service, zone, item):
        assert item.project_id == PROJECT_ID
        assert item.unit == "шт"
        assert item.quantity == 1
        assert len(item.stages) == 6

    def test_create_updates_items_count(self, service, zone, item):
        service.create_item(zone.id, {"code": "K-02", "name": "Верхний модуль"})
        assert service.list_zones(PROJECT_ID)[0].items_count == 2

    @pytest.mark.parametrize("data", [
        {"name": "Без кода"},
        {"code": "K-9"},
        {"code": " ", "name": "Пробел"},
    ])
    def test_create_requires_code_and_name(self, service, zone, data):
        with pytest.raises(ValidationError):
            service.create_item(zone.id, data)

    def test_create_rejects_non_positive_quantity(self, service, zone):
        with pytest.raises(ValidationError):
            service.create_item(zone.id, {"code": "K-3", "name": "Шкаф", "quantity": 0})

    def test_create_in_missing_zone(self, service):
        with pytest.raises(ValidationError):
            service.create_item("missing", {"code": "K-3", "name": "Шкаф"})

    def test_blank_metadata_becomes_none(self, service, item):
        updated = service.update_item(item.id, {"technical_notes": "   ", "manager_comment": "Срочно"})
        assert updated.technical_notes is None
        assert updated.manager_comment == "Срочно"

    def test_delete_recomputes_zone(self, service, store, zone, item, component):
        other = service.create_item(zone.id, {"code": "K-02", "name": "Верхний модуль"})
        for stage in component.stages:
            service.stages.update_stage(stage.id, {"status": "completed"})
        assert progress_of(store, EntityKind.ZONE, zone.id) == 50

        cascade = service.delete_item(item.id)

        assert cascade.zone_progress == 0
        zone_after = service.list_zones(PROJECT_ID)[0]
        assert (zone_after.progress, zone_after.items_count) == (0, 1)
        assert [i.id for i in service.list_zone_items(zone.id)] == [other.id]


# ═════════════════════════════════════════════════════════════════════════
# COMPONENTS
# ═════════════════════════════════════════════════════════════════════════

class TestComponents:
    def test_delete_only_component_resets_item(self, service, store, zone, item, component):
        for stage in component.stages[:4]:
            service.stages.update_stage(stage.id, {"status": "completed"})
        assert progress_of(store, EntityKind.ITEM, item.id) == 57

        cascade = service.delete_component(component.id)

        assert cascade.item_progress == 0
        assert cascade.zone_progress == 0
        assert progress_of(store, EntityKind.ITEM, item.id) == 0
        assert progress_of(store, EntityKind.ZONE, zone.id) == 0

    def test_create_without_template_recomputes_item(self, service, store, item, component):
        for stage in component.stages:
            service.stages.update_stage(stage.id, {"status": "completed"})

        service.create_component(item.id, {"name": "Фасад"})

        assert progress_of(store, EntityKind.ITEM, item.id) == 50

    def test_positions(self, service, item, component):
        second = service.create_component(item.id, {"name": "Фасад"})
        assert (component.position, second.position) == (0, 1)

    def test_update(self, service, component):
        updated = service.update_component(component.id, {"name": "Корпус левый", "quantity": 2})
        assert updated.name == "Корпус левый"
        assert updated.quantity == 2

    def test_update_rejects_progress(self, service, component):
        with pytest.raises(ValidationError):
            service.update_component(component.id, {"progress": 100})

    def test_detail(self, service, item, component):
        detail = service.get_item_detail(item.id)
        assert [c.id for c in detail.components] == [component.id]
        assert len(detail.components[0].stages) == 7
        assert detail.to_dict()["components"][0]["stages"][0]["name"] == "purchase"


# ═════════════════════════════════════════════════════════════════════════
# MATERIALS AND PARTS
# ═════════════════════════════════════════════════════════════════════════

class TestMaterialsAndParts:
    def test_material_crud(self, service, component):
        material = service.add_material(component.id, {"name": "ЛДСП Egger", "thickness": 18, "brand": "Egger"})
        assert service.list_materials(component.id)[0].brand == "Egger"

        updated = service.update_material(material.id, {"article": "W1000"})
        assert updated.article == "W1000"

        service.delete_material(material.id)
        assert service.list_materials(component.id) == []

    def test_materials_do_not_affect_progress(self, service, store, component):
        service.add_material(component.id, {"name": "Кромка ПВХ"})
        assert progress_of(store, EntityKind.COMPONENT, component.id) == 0

    def test_part_crud(self, service, component):
        first = service.add_part(component.id, {"name": "Боковина", "width": 560, "height": 720, "quantity": 2})
        second = service.add_part(component.id, {"name": "Дно"})
        assert (first.position, second.position) == (0, 1)

        service.update_part(second.id, {"depth": 16})
        service.delete_part(first.id)
        parts = service.list_parts(component.id)
        assert [(p.name, p.depth) for p in parts] == [("Дно", 16)]

    def test_part_quantity_must_be_positive(self, service, component):
        with pytest.raises(ValidationError):
            service.add_part(component.id, {"name": "Полка", "quantity": -1})

    def test_material_on_missing_component(self, service):
        with pytest.raises(ValidationError):
            service.add_material("missing", {"name": "МДФ"})


# ═════════════════════════════════════════════════════════════════════════
# OVERVIEW
# ═════════════════════════════════════════════════════════════════════════

class TestOverview:
    def test_empty_project(self, service):
        overview = service.get_project_overview("empty")
        assert overview.progress == 0
        assert overview.zones == [] and overview.items == []

    def test_derived_progress(self, service, zone, item, component):
        other_zone = service.create_zone(PROJECT_ID, "Спальня")
        service.create_item(other_zone.id, {"code": "S-01", "name": "Шкаф"})
        service.stages.update_stage(component.stages[0].id, {"status": "completed"})

        overview = service.get_project_overview(PROJECT_ID)

        assert overview.progress == 7        # mean(14, 0)
        assert len(overview.zones) == 2
        assert len(overview.items) == 2
