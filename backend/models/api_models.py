"""
Request bodies for the production API
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from models.production_models import TemplateStrategy


class ApiModel(BaseModel):
    # Unknown fields reach the service, which rejects them with a 422
    model_config = ConfigDict(extra="allow")

    def patch(self) -> dict:
        """Only the fields the client actually sent"""
        data = self.model_dump(exclude_unset=True)
        data.update(self.model_extra or {})
        return data


class ZoneCreate(BaseModel):
    name: str
    color: Optional[str] = None


class ItemCreate(ApiModel):
    code: str
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None


class ComponentCreate(ApiModel):
    name: str
    template_key: Optional[str] = None

    def patch(self) -> dict:
        data = super().patch()
        data.pop("template_key", None)
        return data


class StageCreate(ApiModel):
    key: Optional[str] = None
    name: Optional[str] = None
    custom_label: Optional[str] = None
    status: Optional[str] = None


class TemplateApply(BaseModel):
    template_key: str
    strategy: TemplateStrategy = TemplateStrategy.REPLACE


class StageOrder(BaseModel):
    stage_ids: List[str]


class Patch(ApiModel):
    """Free-form partial update, validated by the service"""
