"""Calculation run routes.

Routes:
- POST /api/cmm/runs                  - Submit work items, returns the finished run
- GET  /api/cmm/runs                  - Recent runs (without lines)
- GET  /api/cmm/runs/{run_id}         - One run with its breakdown lines
- POST /api/cmm/runs/{run_id}/cancel  - Cancel a PENDING or RUNNING run
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from cmmcalc.calculation.orchestrator import CalculationOrchestrator
from cmmcalc.errors import InvalidTransition, PersistenceError, RunNotFoundError, ValidationError
from cmmcalc.models import CalculationRequest, CalculationRun, RunStatus
from cmmcalc.web.dependencies import get_orchestrator

router = APIRouter(prefix="/api/cmm", tags=["runs"])


@router.post("/runs", response_model=CalculationRun)
async def submit_run(
    request: CalculationRequest,
    orchestrator: CalculationOrchestrator = Depends(get_orchestrator),
):
    """Derive the material breakdown for a set of work items.

    Identical input against the same rule-set version returns the existing
    run. Item-level failures are reported in the run's ``error_log``.
    """
    try:
        return await orchestrator.submit_run(request)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/runs")
async def list_runs(
    project_id: str | None = None,
    category_l1: str | None = None,
    status: RunStatus | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    orchestrator: CalculationOrchestrator = Depends(get_orchestrator),
):
    runs = await orchestrator.list_runs(
        project_id=project_id,
        category_l1=category_l1,
        status=status,
        limit=limit,
        offset=offset,
    )
    return {
        "runs": [run.model_dump(mode="json", exclude={"lines", "suggested_estimate_lines"}) for run in runs],
        "limit": limit,
        "offset": offset,
    }


@router.get("/runs/{run_id}", response_model=CalculationRun)
async def get_run(
    run_id: UUID,
    orchestrator: CalculationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/runs/{run_id}/cancel", response_model=CalculationRun)
async def cancel_run(
    run_id: UUID,
    orchestrator: CalculationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.cancel_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
