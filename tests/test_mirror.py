"""
Client mirror tests.

Tests cover:
  - reduce_entry: confirmed always wins, discard, tombstones
  - Loading project listings and item detail
  - Local aggregate guesses and authoritative overwrite
  - Discarding an item subtree
"""
import pytest

from conftest import PROJECT_ID
from models.production_models import EntityKind
from services.mirror import Action, MirrorEntry, ProductionMirror, reduce_entry
from services.progress_service import CascadeResult


# ═════════════════════════════════════════════════════════════════════════
# REDUCER
# ═════════════════════════════════════════════════════════════════════════

class TestReduceEntry:
    def test_optimistic_layers_over_confirmed(self):
        entry = reduce_entry(MirrorEntry({"id": "s", "status": "pending", "notes": "a"}),
                             Action.OPTIMISTIC, {"status": "completed"})
        assert entry.value == {"id": "s", "status": "completed", "notes": "a"}
        assert entry.confirmed["status"] == "pending"
        assert entry.pending

    def test_optimistic_accumulates(self):
        entry = reduce_entry(None, Action.OPTIMISTIC, {"a": 1})
        entry = reduce_entry(entry, Action.OPTIMISTIC, {"b": 2})
        assert entry.value == {"a": 1, "b": 2}
        assert entry.confirmed is None

    def test_confirm_wins_over_optimistic(self):
        entry = reduce_entry(MirrorEntry({"p": 0}, {"p": 50}), Action.CONFIRM, {"p": 43})
        assert entry.value == {"p": 43}
        assert entry.optimistic is None
        assert not entry.pending

    def test_confirm_fields_clears_guess(self):
        entry = reduce_entry(MirrorEntry({"id": "c", "progress": 0}, {"id": "c", "progress": 50}),
                             Action.CONFIRM_FIELDS, {"progress": 43})
        assert entry.value == {"id": "c", "progress": 43}

    def test_confirm_fields_without_confirmed_is_noop(self):
        entry = MirrorEntry(None, {"id": "tmp"})
        assert reduce_entry(entry, Action.CONFIRM_FIELDS, {"progress": 1}) is entry

    def test_delete_hides_value(self):
        entry = reduce_entry(MirrorEntry({"id": "s"}), Action.DELETE)
        assert entry.value is None
        assert entry.confirmed == {"id": "s"}

    def test_discard_restores_confirmed(self):
        entry = reduce_entry(MirrorEntry({"id": "s"}, None, deleted=True), Action.DISCARD)
        assert entry.value == {"id": "s"}

    def test_discard_drops_optimistic_only_entry(self):
        assert reduce_entry(MirrorEntry(None, {"id": "tmp"}), Action.DISCARD) is None

    def test_remove(self):
        assert reduce_entry(MirrorEntry({"id": "s"}), Action.REMOVE) is None


# ═════════════════════════════════════════════════════════════════════════
# LOADING AND VIEWS
# ═════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def mirror(service, zone, item, component):
    mirror = ProductionMirror(PROJECT_ID)
    mirror.load_project(service.list_zones(PROJECT_ID), service.list_project_items(PROJECT_ID))
    mirror.load_item_detail(service.get_item_detail(item.id))
    return mirror


class TestLoading:
    def test_views(self, mirror, zone, item, component):
        assert [z.id for z in mirror.zones()] == [zone.id]
        assert [i.id for i in mirror.items(zone.id)] == [item.id]
        detail = mirror.item(item.id)
        assert [c.id for c in detail.components] == [component.id]
        assert [s.name for s in detail.components[0].stages] == [s.name for s in component.stages]
        assert len(detail.stages) == 6

    def test_stages_sorted_by_position(self, mirror, component):
        stages = component.stages
        mirror.dispatch(EntityKind.STAGE, stages[0].id, Action.OPTIMISTIC, {"position": 99})
        assert mirror.stages(component.id)[-1].id == stages[0].id

    def test_reload_drops_deleted_records(self, mirror, service, zone, item):
        service.delete_item(item.id)
        mirror.load_project(service.list_zones(PROJECT_ID), service.list_project_items(PROJECT_ID))
        assert mirror.items(zone.id) == []
        assert mirror.item(item.id) is None
        assert mirror.children(EntityKind.COMPONENT, item.id) == []

    def test_listener_called_on_change(self, mirror, zone):
        seen = []
        mirror.add_listener(lambda m: seen.append(m.version))
        mirror.dispatch(EntityKind.ZONE, zone.id, Action.OPTIMISTIC, {"name": "X"})
        assert seen == [mirror.version]


# ═════════════════════════════════════════════════════════════════════════
# AGGREGATE GUESSES
# ═════════════════════════════════════════════════════════════════════════

class TestGuesses:
    def test_guess_uses_engine_rounding(self, mirror, zone, item, component):
        stage = component.stages[0]
        mirror.dispatch(EntityKind.STAGE, stage.id, Action.OPTIMISTIC, {"status": "completed"})
        mirror.guess_progress(component_id=component.id)

        assert mirror.get(EntityKind.COMPONENT, component.id)["progress"] == 14
        assert mirror.get(EntityKind.ITEM, item.id)["progress"] == 14
        assert mirror.get(EntityKind.ZONE, zone.id)["progress"] == 14

    def test_authoritative_cascade_overwrites_guess(self, mirror, zone, item, component):
        mirror.dispatch(EntityKind.COMPONENT, component.id, Action.OPTIMISTIC, {"progress": 50})
        mirror.apply_cascade(CascadeResult(component.id, 43, item.id, 43, zone.id, 43))

        assert mirror.get(EntityKind.COMPONENT, component.id)["progress"] == 43
        assert not mirror.entry(EntityKind.COMPONENT, component.id).pending

    def test_discard_item_subtree(self, mirror, item, component):
        stage = component.stages[0]
        mirror.dispatch(EntityKind.STAGE, stage.id, Action.OPTIMISTIC, {"status": "completed"})
        mirror.dispatch(EntityKind.STAGE, "tmp-1", Action.OPTIMISTIC,
                        {"id": "tmp-1", "component_id": component.id, "name": "x", "position": 9})
        mirror.delete_subtree(EntityKind.COMPONENT, component.id)

        mirror.discard_item_subtree(item.id)

        assert not mirror.has_pending()
        assert mirror.get(EntityKind.STAGE, stage.id)["status"] == "pending"
        assert mirror.get(EntityKind.STAGE, "tmp-1") is None
        assert mirror.get(EntityKind.COMPONENT, component.id) is not None
