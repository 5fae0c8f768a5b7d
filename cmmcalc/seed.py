"""Reference data seeding.

Reads ``cmmcalc/data/seed.yaml`` (taxonomy, materials, unit conversions,
rule sets with their rules and waste factors, building profiles) and inserts
it into an empty database.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmmcalc.config import get_config
from cmmcalc.db.models import (
    BuildingProfileModel,
    CategoryL1Model,
    CategoryL2Model,
    CategoryL3Model,
    MaterialMasterModel,
    RuleSetModel,
    UnitConversionModel,
    WasteFactorModel,
)
from cmmcalc.models import (
    BuildingProfile,
    CategoryNode,
    ConversionRule,
    MaterialMaster,
    UnitConversion,
    WasteFactor,
)
from cmmcalc.rules.registry import rule_to_model
from cmmcalc.taxonomy.tree import CategoryTaxonomy

logger = logging.getLogger(__name__)


class RuleSetSeed(BaseModel):
    version: str
    name: str
    description: str | None = None
    effective_from: datetime
    is_current: bool = False
    rules: list[ConversionRule] = Field(default_factory=list)
    waste_factors: list[WasteFactor] = Field(default_factory=list)


class SeedData(BaseModel):
    taxonomy: list[CategoryNode] = Field(default_factory=list)
    materials: list[MaterialMaster] = Field(default_factory=list)
    unit_conversions: list[UnitConversion] = Field(default_factory=list)
    rule_sets: list[RuleSetSeed] = Field(default_factory=list)
    building_profiles: list[BuildingProfile] = Field(default_factory=list)


def _flatten_taxonomy(
    entries: list[dict[str, Any]], level: int = 1, parent: str | None = None
) -> list[dict[str, Any]]:
    nodes: list[dict[str, Any]] = []
    for entry in entries:
        entry = dict(entry)
        children = entry.pop("children", None) or []
        nodes.append({**entry, "level": level, "parent_code": parent})
        nodes.extend(_flatten_taxonomy(children, level + 1, entry["code"]))
    return nodes


def _stamp_version(rule_set: dict[str, Any]) -> dict[str, Any]:
    version = rule_set["version"]
    return {
        **rule_set,
        "rules": [
            {**rule, "rule_set_version": version} for rule in rule_set.get("rules") or []
        ],
        "waste_factors": [
            {**row, "rule_set_version": version} for row in rule_set.get("waste_factors") or []
        ],
    }


def load_seed_file(path: Path) -> SeedData:
    """Parse and validate a seed file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the YAML is malformed or fails validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top of {path}, got {type(data)}")

    data["taxonomy"] = _flatten_taxonomy(data.get("taxonomy") or [])
    data["rule_sets"] = [_stamp_version(rs) for rs in data.get("rule_sets") or []]

    seed = SeedData.model_validate(data)

    # Structural checks (duplicate codes, dangling parents)
    CategoryTaxonomy(seed.taxonomy)
    current = [rs.version for rs in seed.rule_sets if rs.is_current]
    if len(current) > 1:
        raise ValueError(f"Seed marks more than one rule set current: {', '.join(current)}")

    return seed


async def is_seeded(session: AsyncSession) -> bool:
    count = await session.scalar(select(func.count()).select_from(CategoryL1Model))
    return bool(count)


async def seed_reference_data(session: AsyncSession, seed: SeedData | None = None) -> dict[str, int]:
    """Insert reference data unless the taxonomy is already present.

    Returns counts per table; all zero when the database was already seeded.
    The caller owns the transaction.
    """
    counts = {
        "categories": 0,
        "materials": 0,
        "unit_conversions": 0,
        "rule_sets": 0,
        "rules": 0,
        "waste_factors": 0,
        "building_profiles": 0,
    }
    if await is_seeded(session):
        logger.info("Reference data already present, skipping seed")
        return counts

    if seed is None:
        seed = load_seed_file(get_config().seed_file_path)

    for node in sorted(seed.taxonomy, key=lambda n: n.level):
        if node.level == 1:
            session.add(
                CategoryL1Model(
                    code=node.code,
                    name=node.name,
                    sort_order=node.sort_order,
                    is_active=node.is_active,
                )
            )
        elif node.level == 2:
            session.add(
                CategoryL2Model(
                    code=node.code,
                    l1_code=node.parent_code,
                    name=node.name,
                    default_unit=node.default_unit,
                    sort_order=node.sort_order,
                    is_active=node.is_active,
                )
            )
        else:
            session.add(
                CategoryL3Model(
                    code=node.code,
                    l2_code=node.parent_code,
                    name=node.name,
                    default_materials=list(node.default_materials),
                    default_params=dict(node.default_params),
                    sort_order=node.sort_order,
                    is_active=node.is_active,
                )
            )
        counts["categories"] += 1
    # Parents before children
    await session.flush()

    for material in seed.materials:
        session.add(
            MaterialMasterModel(
                **material.model_dump(exclude={"category", "status"}),
                category=material.category.value,
                status=material.status.value,
            )
        )
    counts["materials"] = len(seed.materials)

    for conversion in seed.unit_conversions:
        session.add(UnitConversionModel(**conversion.model_dump()))
    counts["unit_conversions"] = len(seed.unit_conversions)

    for rule_set in seed.rule_sets:
        session.add(
            RuleSetModel(
                version=rule_set.version,
                name=rule_set.name,
                description=rule_set.description,
                is_current=rule_set.is_current,
                is_editable=not rule_set.is_current,
                effective_from=rule_set.effective_from,
            )
        )
    await session.flush()
    counts["rule_sets"] = len(seed.rule_sets)

    for rule_set in seed.rule_sets:
        for rule in rule_set.rules:
            session.add(rule_to_model(rule))
            counts["rules"] += 1
        for row in rule_set.waste_factors:
            session.add(WasteFactorModel(**row.model_dump()))
            counts["waste_factors"] += 1

    for profile in seed.building_profiles:
        session.add(
            BuildingProfileModel(
                code=profile.code,
                name=profile.name,
                structure_type=profile.structure_type.value,
                usage=profile.usage.value,
                min_floors=profile.min_floors,
                max_floors=profile.max_floors,
                factors={
                    name: {"value": str(factor.value), "unit": factor.unit}
                    for name, factor in profile.factors.items()
                },
                category_l1=profile.category_l1,
                description=profile.description,
                is_system_default=profile.is_system_default,
            )
        )
    counts["building_profiles"] = len(seed.building_profiles)

    await session.flush()
    logger.info(f"Seeded reference data: {counts}")
    return counts
