from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from typing import Optional

from config import Config
from errors import (
    CascadeError,
    ConstraintViolationError,
    ProductionError,
    RecordNotFoundError,
    StoreError,
    ValidationError,
)
from models.api_models import (
    ComponentCreate,
    ItemCreate,
    Patch,
    StageCreate,
    StageOrder,
    TemplateApply,
    ZoneCreate,
)
from services.error_reporter import ErrorReporter
from services.production_service import ProductionService
from services.template_catalog import list_templates

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (ValidationError, 422),
    (RecordNotFoundError, 404),
    (ConstraintViolationError, 409),
    (CascadeError, 500),
    (StoreError, 502),
)


def status_code_for(error: ProductionError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


def _cascade(result):
    return result.to_dict() if result is not None else None


def create_app(service: Optional[ProductionService] = None) -> FastAPI:
    """
    Build the API around a production service

    Without a service the configured backend is created here and its
    change feed is closed on shutdown.
    """
    feed = None
    if service is None:
        from database.store_factory import create_backend
        Config.validate()
        store, feed = create_backend()
        service = ProductionService(store)

    app = FastAPI(
        title="Production Tracking API",
        description="Zones, items, components and stages with cascading progress",
        version="1.0.0"
    )

    # CORS for the web frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service
    app.state.errors = ErrorReporter()

    @app.exception_handler(ProductionError)
    def production_error(request: Request, exc: ProductionError):
        app_error = app.state.errors.report(exc, f"{request.method} {request.url.path}")
        return JSONResponse(status_code=status_code_for(exc), content=app_error.to_dict())

    @app.get("/")
    def root():
        return {"status": "running", "service": "Production Tracking", "backend": Config.STORE_BACKEND}

    @app.get("/api/templates")
    def get_templates():
        """Stage template catalog"""
        return {"templates": [t.to_dict() for t in list_templates()]}

    @app.get("/api/errors")
    def get_errors(limit: int = 10):
        """Most recent failed requests, newest first"""
        return {"errors": [e.to_dict() for e in app.state.errors.recent(limit)]}

    # ================================================================
    # Projects and zones
    # ================================================================
    @app.get("/api/projects/{project_id}/zones")
    def get_zones(project_id: str):
        zones = service.list_zones(project_id)
        return {"zones": [z.to_dict() for z in zones], "count": len(zones)}

    @app.get("/api/projects/{project_id}/overview")
    def get_overview(project_id: str):
        """Zones, items and the derived project progress"""
        return service.get_project_overview(project_id).to_dict()

    @app.post("/api/projects/{project_id}/zones", status_code=201)
    def create_zone(project_id: str, body: ZoneCreate):
        return service.create_zone(project_id, body.name, body.color).to_dict()

    @app.patch("/api/zones/{zone_id}")
    def update_zone(zone_id: str, body: Patch):
        return service.update_zone(zone_id, body.patch()).to_dict()

    @app.delete("/api/zones/{zone_id}")
    def delete_zone(zone_id: str):
        service.delete_zone(zone_id)
        return {"status": "deleted", "id": zone_id}

    # ================================================================
    # Items
    # ================================================================
    @app.get("/api/zones/{zone_id}/items")
    def get_zone_items(zone_id: str):
        items = service.list_zone_items(zone_id)
        return {"items": [i.to_dict() for i in items], "count": len(items)}

    @app.post("/api/zones/{zone_id}/items", status_code=201)
    def create_item(zone_id: str, body: ItemCreate):
        return service.create_item(zone_id, body.patch()).to_dict()

    @app.get("/api/items/{item_id}")
    def get_item(item_id: str):
        """Item with components, their stages, materials and parts"""
        return service.get_item_detail(item_id).to_dict()

    @app.patch("/api/items/{item_id}")
    def update_item(item_id: str, body: Patch):
        return service.update_item(item_id, body.patch()).to_dict()

    @app.delete("/api/items/{item_id}")
    def delete_item(item_id: str):
        return {"status": "deleted", "id": item_id, "cascade": _cascade(service.delete_item(item_id))}

    @app.post("/api/items/{item_id}/stages", status_code=201)
    def add_item_stage(item_id: str, body: StageCreate):
        change = service.stages.add_item_stage(item_id, body.patch())
        return change.stage.to_dict()

    @app.patch("/api/item-stages/{stage_id}")
    def update_item_stage(stage_id: str, body: Patch):
        return service.stages.update_item_stage(stage_id, body.patch()).stage.to_dict()

    @app.delete("/api/item-stages/{stage_id}")
    def delete_item_stage(stage_id: str):
        service.stages.delete_item_stage(stage_id)
        return {"status": "deleted", "id": stage_id}

    # ================================================================
    # Components
    # ================================================================
    @app.post("/api/items/{item_id}/components", status_code=201)
    def create_component(item_id: str, body: ComponentCreate):
        return service.create_component(item_id, body.patch(), body.template_key).to_dict()

    @app.get("/api/components/{component_id}")
    def get_component(component_id: str):
        return service.get_component_detail(component_id).to_dict()

    @app.patch("/api/components/{component_id}")
    def update_component(component_id: str, body: Patch):
        return service.update_component(component_id, body.patch()).to_dict()

    @app.delete("/api/components/{component_id}")
    def delete_component(component_id: str):
        cascade = service.delete_component(component_id)
        return {"status": "deleted", "id": component_id, "cascade": _cascade(cascade)}

    @app.post("/api/components/{component_id}/template")
    def apply_template(component_id: str, body: TemplateApply):
        """Seed (replace) or extend (merge) the stages from a template"""
        return service.stages.instantiate_from_template(component_id, body.template_key, body.strategy).to_dict()

    # ================================================================
    # Component stages
    # ================================================================
    @app.post("/api/components/{component_id}/stages", status_code=201)
    def add_stage(component_id: str, body: StageCreate):
        change = service.stages.add_stage(component_id, body.patch())
        return {"stage": change.stage.to_dict(), "cascade": _cascade(change.cascade)}

    @app.post("/api/components/{component_id}/stages/reorder")
    def reorder_stages(component_id: str, body: StageOrder):
        stages = service.stages.reorder_stages(component_id, body.stage_ids)
        return {"stages": [s.to_dict() for s in stages]}

    @app.post("/api/components/{component_id}/stages/compact")
    def compact_stages(component_id: str):
        stages = service.stages.compact_stage_positions(component_id)
        return {"stages": [s.to_dict() for s in stages]}

    @app.post("/api/components/{component_id}/stages/{stage_id}/move-up")
    def move_stage_up(component_id: str, stage_id: str):
        return {"moved": service.stages.move_stage_up(component_id, stage_id)}

    @app.post("/api/components/{component_id}/stages/{stage_id}/move-down")
    def move_stage_down(component_id: str, stage_id: str):
        return {"moved": service.stages.move_stage_down(component_id, stage_id)}

    @app.patch("/api/stages/{stage_id}")
    def update_stage(stage_id: str, body: Patch):
        change = service.stages.update_stage(stage_id, body.patch())
        return {"stage": change.stage.to_dict(), "cascade": _cascade(change.cascade)}

    @app.delete("/api/stages/{stage_id}")
    def delete_stage(stage_id: str):
        change = service.stages.delete_stage(stage_id)
        return {"status": "deleted", "id": stage_id, "cascade": _cascade(change.cascade)}

    # ================================================================
    # Materials and parts
    # ================================================================
    @app.post("/api/components/{component_id}/materials", status_code=201)
    def add_material(component_id: str, body: Patch):
        return service.add_material(component_id, body.patch()).to_dict()

    @app.patch("/api/materials/{material_id}")
    def update_material(material_id: str, body: Patch):
        return service.update_material(material_id, body.patch()).to_dict()

    @app.delete("/api/materials/{material_id}")
    def delete_material(material_id: str):
        service.delete_material(material_id)
        return {"status": "deleted", "id": material_id}

    @app.post("/api/components/{component_id}/parts", status_code=201)
    def add_part(component_id: str, body: Patch):
        return service.add_part(component_id, body.patch()).to_dict()

    @app.patch("/api/parts/{part_id}")
    def update_part(part_id: str, body: Patch):
        return service.update_part(part_id, body.patch()).to_dict()

    @app.delete("/api/parts/{part_id}")
    def delete_part(part_id: str):
        service.delete_part(part_id)
        return {"status": "deleted", "id": part_id}

    @app.on_event("startup")
    def startup():
        logger.info("API server started")

    @app.on_event("shutdown")
    def shutdown():
        """Cleanup on shutdown"""
        if feed is not None:
            feed.close()
        service.store.close()
        logger.info("API server stopped")

    return app
