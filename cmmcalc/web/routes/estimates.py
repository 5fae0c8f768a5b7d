"""Building profile estimate routes.

Routes:
- GET  /api/cmm/profiles         - Building profiles, filterable
- GET  /api/cmm/profiles/{code}  - One profile
- POST /api/cmm/estimate         - Quantities from gross floor area
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from cmmcalc.db.connection import get_session
from cmmcalc.errors import ProfileNotFoundError
from cmmcalc.estimator.profiles import BuildingProfileEstimator
from cmmcalc.models import (
    BuildingProfile,
    BuildingUsage,
    EstimateRequest,
    EstimateResult,
    StructureType,
)

router = APIRouter(prefix="/api/cmm", tags=["estimates"])


async def _load_estimator() -> BuildingProfileEstimator:
    async with get_session() as session:
        return await BuildingProfileEstimator.from_session(session)


@router.get("/profiles", response_model=list[BuildingProfile])
async def list_profiles(
    structure_type: StructureType | None = None,
    usage: BuildingUsage | None = None,
):
    estimator = await _load_estimator()
    return estimator.list_profiles(structure_type, usage)


@router.get("/profiles/{code}", response_model=BuildingProfile)
async def get_profile(code: str):
    estimator = await _load_estimator()
    try:
        return estimator.get_profile(code)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/estimate", response_model=EstimateResult)
async def estimate(request: EstimateRequest):
    """Early-stage material quantities for a building.

    Picks the profile for the structure type, usage and floor count unless
    ``profile_code`` names one.
    """
    estimator = await _load_estimator()
    try:
        return estimator.estimate(
            structure_type=request.structure_type,
            usage=request.usage,
            floors=request.floors,
            gross_floor_area=request.gross_floor_area,
            profile_code=request.profile_code,
        )
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
