"""
Stage templates per material classification
Static catalog data used to seed a component's stages
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class StageDefinition:
    key: str
    label: str
    estimated_hours: float = 0.0

    def to_dict(self):
        return {"key": self.key, "label": self.label, "estimated_hours": self.estimated_hours}


@dataclass(frozen=True)
class StageTemplate:
    key: str
    label: str
    description: str
    stages: Tuple[StageDefinition, ...]
    default_material: str = ""
    default_unit: str = "шт"

    @property
    def stage_keys(self) -> List[str]:
        return [s.key for s in self.stages]

    def to_dict(self):
        return {
            "key": self.key,
            "label": self.label,
            "description": self.description,
            "default_material": self.default_material,
            "default_unit": self.default_unit,
            "stages": [s.to_dict() for s in self.stages],
        }


PURCHASE = StageDefinition("purchase", "Закупка материала", 0)
CUTTING_CNC = StageDefinition("cutting_cnc", "Раскрой / присадка / ЧПУ", 2)
PREASSEMBLY = StageDefinition("preassembly", "Предсборка", 2)
SANDING = StageDefinition("sanding", "Шлифовка", 1.5)
PAINTING_1 = StageDefinition("painting_1", "Покраска (1-й слой)", 2)
SANDING_2 = StageDefinition("sanding_2", "Шлифовка (2-я)", 1)
PAINTING_2 = StageDefinition("painting_2", "Покраска (2-й слой)", 2)
QA = StageDefinition("qa", "ОТК контроль QA", 0.5)
PACKAGING = StageDefinition("packaging", "Упаковка", 0.5)
DELIVERY = StageDefinition("delivery", "Доставка / Монтаж", 4)

# ЛДСП has no sanding or painting
LDSP_STAGES = (
    PURCHASE,
    CUTTING_CNC,
    StageDefinition("edging", "Кромка", 1.5),
    PREASSEMBLY,
    StageDefinition("qa", "Отконтроль QA", 0.5),
    PACKAGING,
    DELIVERY,
)

# Two rounds of sanding and painting
MDF_EMAL_STAGES = (
    PURCHASE,
    CUTTING_CNC,
    PREASSEMBLY,
    SANDING,
    PAINTING_1,
    SANDING_2,
    PAINTING_2,
    QA,
    PACKAGING,
    DELIVERY,
)

SHPON_STAGES = (
    PURCHASE,
    CUTTING_CNC,
    StageDefinition("edging", "Кромка", 1),
    PREASSEMBLY,
    SANDING,
    PAINTING_1,
    SANDING_2,
    PAINTING_2,
    QA,
    PACKAGING,
    DELIVERY,
)

PLYWOOD_STAGES = MDF_EMAL_STAGES

CUSTOM_STAGES = SHPON_STAGES

TEMPLATES: Tuple[StageTemplate, ...] = (
    StageTemplate("ldsp", "ЛДСП", "Ламинированная древесно-стружечная плита",
                  LDSP_STAGES, default_material="ЛДСП 18мм"),
    StageTemplate("mdf_emal", "МДФ-Эмаль", "МДФ с покраской эмалью",
                  MDF_EMAL_STAGES, default_material="МДФ 16мм"),
    StageTemplate("shpon", "Шпон", "Шпонированные изделия",
                  SHPON_STAGES, default_material="МДФ 16мм + шпон"),
    StageTemplate("plywood", "Фанера", "Изделия из фанеры",
                  PLYWOOD_STAGES, default_material="Фанера 18мм"),
    StageTemplate("custom", "Кастомный", "Свой набор этапов", CUSTOM_STAGES),
)

_BY_KEY: Dict[str, StageTemplate] = {t.key: t for t in TEMPLATES}

# Item-level tracker seeded on every new item
ITEM_DEFAULT_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition("cutting", "Раскрой"),
    StageDefinition("edging", "Кромка"),
    StageDefinition("drilling", "Присадка"),
    StageDefinition("assembly", "Сборка"),
    StageDefinition("finishing", "Отделка"),
    StageDefinition("packaging", "Упаковка"),
)


def get_template_by_key(key: Optional[str]) -> Optional[StageTemplate]:
    """Look up a template by key, falling back to its human label"""
    if not key:
        return None
    template = _BY_KEY.get(key)
    if template is not None:
        return template
    wanted = key.strip().casefold()
    for candidate in TEMPLATES:
        if candidate.label.casefold() == wanted:
            return candidate
    return None


def list_templates() -> List[StageTemplate]:
    return list(TEMPLATES)


def get_default_template() -> StageTemplate:
    return TEMPLATES[0]


def stage_label(key: Optional[str], item_level: bool = False) -> Optional[str]:
    """Human label for a stage key; the first template that defines the key wins"""
    definitions = ITEM_DEFAULT_STAGES if item_level else (d for t in TEMPLATES for d in t.stages)
    for definition in definitions:
        if definition.key == key:
            return definition.label
    return None
