"""
HTTP API tests.

Tests cover:
  - Zone / item / component / stage endpoints over the SQLite backend
  - Template catalog endpoint
  - Error mapping: 422 validation, 404 not found, 409 conflict,
    500 cascade partial failure, 502 store failure
  - Error log endpoint
"""
import pytest
from fastapi.testclient import TestClient

from api.routes import create_app, status_code_for
from conftest import PROJECT_ID
from errors import (
    CascadeError,
    ConstraintViolationError,
    RecordNotFoundError,
    TransportError,
    ValidationError,
)


@pytest.fixture()
def client(service):
    return TestClient(create_app(service))


@pytest.fixture()
def api_zone(client):
    res = client.post(f"/api/projects/{PROJECT_ID}/zones", json={"name": "Кухня"})
    assert res.status_code == 201
    return res.json()


@pytest.fixture()
def api_item(client, api_zone):
    res = client.post(f"/api/zones/{api_zone['id']}/items", json={"code": "K-01", "name": "Нижний модуль"})
    assert res.status_code == 201
    return res.json()


@pytest.fixture()
def api_component(client, api_item):
    res = client.post(
        f"/api/items/{api_item['id']}/components",
        json={"name": "Корпус", "template_key": "ldsp"},
    )
    assert res.status_code == 201
    return res.json()


# ═════════════════════════════════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════════════════════════════════

class TestResources:
    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_templates(self, client):
        data = client.get("/api/templates").json()
        assert [t["key"] for t in data["templates"]] == ["ldsp", "mdf_emal", "shpon", "plywood", "custom"]

    def test_zones(self, client, api_zone):
        data = client.get(f"/api/projects/{PROJECT_ID}/zones").json()
        assert data["count"] == 1
        assert data["zones"][0]["name"] == "Кухня"

    def test_item_detail(self, client, api_item, api_component):
        data = client.get(f"/api/items/{api_item['id']}").json()
        assert data["components"][0]["id"] == api_component["id"]
        assert len(data["components"][0]["stages"]) == 7
        assert len(data["stages"]) == 6

    def test_stage_update_returns_cascade(self, client, api_component, api_zone):
        stage_id = api_component["stages"][0]["id"]
        res = client.patch(f"/api/stages/{stage_id}", json={"status": "completed"})

        assert res.status_code == 200
        body = res.json()
        assert body["stage"]["color"] == "success"
        assert body["cascade"]["component_progress"] == 14
        assert body["cascade"]["zone_id"] == api_zone["id"]

    def test_overview(self, client, api_component):
        client.patch(f"/api/stages/{api_component['stages'][0]['id']}", json={"status": "completed"})
        data = client.get(f"/api/projects/{PROJECT_ID}/overview").json()
        assert data["progress"] == 14

    def test_template_merge(self, client, api_component):
        res = client.post(
            f"/api/components/{api_component['id']}/template",
            json={"template_key": "shpon", "strategy": "merge"},
        )
        assert res.status_code == 200
        assert res.json()["created"] == 4

    def test_reorder_and_move(self, client, api_component):
        ids = [s["id"] for s in api_component["stages"]]
        res = client.post(f"/api/components/{api_component['id']}/stages/reorder", json={"stage_ids": ids[::-1]})
        assert [s["id"] for s in res.json()["stages"]] == ids[::-1]

        res = client.post(f"/api/components/{api_component['id']}/stages/{ids[0]}/move-up")
        assert res.json() == {"moved": True}

    def test_delete_component(self, client, api_item, api_component):
        res = client.delete(f"/api/components/{api_component['id']}")
        assert res.status_code == 200
        assert res.json()["cascade"]["item_progress"] == 0
        assert client.get(f"/api/items/{api_item['id']}").json()["components"] == []

    def test_materials_and_parts(self, client, api_component):
        res = client.post(f"/api/components/{api_component['id']}/materials", json={"name": "ЛДСП Egger"})
        assert res.status_code == 201
        res = client.post(f"/api/components/{api_component['id']}/parts", json={"name": "Боковина", "quantity": 2})
        assert res.status_code == 201
        detail = client.get(f"/api/components/{api_component['id']}").json()
        assert len(detail["materials"]) == 1
        assert detail["parts"][0]["name"] == "Боковина"


# ═════════════════════════════════════════════════════════════════════════
# ERRORS
# ═════════════════════════════════════════════════════════════════════════

class TestErrors:
    def test_unknown_template_is_422(self, client, api_item):
        res = client.post(
            f"/api/items/{api_item['id']}/components",
            json={"name": "Корпус", "template_key": "granite"},
        )
        assert res.status_code == 422
        assert res.json()["code"] == "VALIDATION_ERROR"

    def test_derived_field_is_422(self, client, api_zone):
        res = client.patch(f"/api/zones/{api_zone['id']}", json={"progress": 100})
        assert res.status_code == 422

    def test_stage_position_is_not_settable(self, client, api_component):
        res = client.post(
            f"/api/components/{api_component['id']}/stages",
            json={"key": "extra", "position": 0},
        )
        assert res.status_code == 422
        assert "position" in res.json()["details"]

    def test_missing_item_is_404(self, client):
        res = client.get("/api/items/nope")
        assert res.status_code == 404
        assert res.json()["code"] == "NOT_FOUND"

    def test_errors_are_logged(self, client):
        client.get("/api/items/nope")
        errors = client.get("/api/errors").json()["errors"]
        assert errors[0]["context"] == "GET /api/items/nope"

    def test_cascade_failure_is_500_with_levels(self, client, service, api_component, monkeypatch):
        def broken(component_id):
            raise CascadeError(component_id, ["component", "item"], "zone")

        monkeypatch.setattr(service.progress, "recalculate_cascade", broken)
        stage_id = api_component["stages"][0]["id"]
        res = client.patch(f"/api/stages/{stage_id}", json={"status": "completed"})

        assert res.status_code == 500
        assert res.json()["details"] == {"completed_levels": ["component", "item"], "failed_level": "zone"}

    @pytest.mark.parametrize("error, status", [
        (ValidationError("bad"), 422),
        (RecordNotFoundError("zone", "z"), 404),
        (ConstraintViolationError("dup"), 409),
        (CascadeError("c", ["component"], "item"), 500),
        (TransportError("down"), 502),
    ])
    def test_status_mapping(self, error, status):
        assert status_code_for(error) == status
