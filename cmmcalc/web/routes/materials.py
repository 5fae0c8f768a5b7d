"""Material catalogue routes.

Routes:
- GET /api/cmm/materials                 - Browse the catalogue (filters, paging)
- GET /api/cmm/materials/{code}          - One material
- GET /api/cmm/materials/{code}/convert  - Convert a quantity for one material
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query
from sqlalchemy import func, select

from cmmcalc.db.connection import get_session
from cmmcalc.db.models import MaterialMasterModel
from cmmcalc.errors import IncompatibleUnits
from cmmcalc.models import MaterialCategory, MaterialMaster, MaterialStatus
from cmmcalc.units.converter import load_converter, normalize_unit, to_packaging

router = APIRouter(prefix="/api/cmm", tags=["materials"])


async def _get_material(session, code: str) -> MaterialMaster:
    row = (
        await session.execute(select(MaterialMasterModel).where(MaterialMasterModel.code == code))
    ).scalar_one_or_none()
    if row is None or row.deleted_at is not None:
        raise HTTPException(status_code=404, detail=f"Material {code} not found")
    return MaterialMaster.model_validate(row)


@router.get("/materials")
async def list_materials(
    category: MaterialCategory | None = None,
    category_l1: str | None = None,
    status: MaterialStatus | None = None,
    search: str | None = Query(default=None, description="Matches code, name or English name"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Soft-deleted materials are never listed."""
    conditions = [MaterialMasterModel.deleted_at.is_(None)]
    if category:
        conditions.append(MaterialMasterModel.category == category.value)
    if category_l1:
        conditions.append(MaterialMasterModel.category_l1 == category_l1)
    if status:
        conditions.append(MaterialMasterModel.status == status.value)
    if search:
        search_term = f"%{search}%"
        conditions.append(
            (MaterialMasterModel.code.ilike(search_term))
            | (MaterialMasterModel.name.ilike(search_term))
            | (MaterialMasterModel.english_name.ilike(search_term))
        )

    async with get_session() as session:
        total = (
            await session.execute(
                select(func.count()).select_from(MaterialMasterModel).where(*conditions)
            )
        ).scalar_one()
        rows = (
            await session.execute(
                select(MaterialMasterModel)
                .where(*conditions)
                .order_by(MaterialMasterModel.code)
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()

    return {
        "materials": [MaterialMaster.model_validate(row).model_dump(mode="json") for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/materials/{code}", response_model=MaterialMaster)
async def get_material(code: str):
    async with get_session() as session:
        return await _get_material(session, code)


@router.get("/materials/{code}/convert")
async def convert_quantity(
    code: str,
    quantity: Decimal = Query(..., ge=0),
    from_unit: str = Query(...),
    to_unit: str | None = Query(default=None, description="Defaults to the material's base unit"),
):
    """Convert ``quantity`` of a material between units.

    Material-specific factors win over generic ones. When the target is the
    material's base unit and it has a packaging size, the number of whole
    packages is included.
    """
    async with get_session() as session:
        material = await _get_material(session, code)
        converter = await load_converter(session, [code])

    target = to_unit or material.base_unit
    try:
        factor = converter.factor_for(from_unit, target, code)
    except (IncompatibleUnits, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = converter.convert(quantity, from_unit, target, factor=factor)
    response = {
        "material_code": code,
        "quantity": quantity,
        "from_unit": normalize_unit(from_unit),
        "to_unit": normalize_unit(target),
        "factor": factor,
        "result": result,
    }
    if material.packaging_size is not None and normalize_unit(target) == normalize_unit(material.base_unit):
        response["packaging_unit"] = material.packaging_unit
        response["packaging_quantity"] = to_packaging(result, material.packaging_size)
    return response
