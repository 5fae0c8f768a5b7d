"""Helpers for persisting calculation runs.

Status changes are compare-and-swap updates: ``UPDATE ... WHERE status IN
(allowed sources)``. A zero row count means another writer got there first.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cmmcalc.calculation.state import sources_for
from cmmcalc.db.models import CalculationRunModel, MaterialBreakdownModel
from cmmcalc.models import (
    CalculationRun,
    FailureReason,
    ItemError,
    MaterialBreakdownLine,
    ResultSummary,
    RunStatus,
    TraceInfo,
)


def _line_from_model(row: MaterialBreakdownModel) -> MaterialBreakdownLine:
    return MaterialBreakdownLine(
        id=row.id,
        run_id=row.run_id,
        source_work_item_code=row.source_work_item_code,
        category_l1=row.category_l1,
        category_l2=row.category_l2,
        category_l3=row.category_l3,
        material_code=row.material_code,
        material_name=row.material_name,
        spec=row.spec,
        base_quantity=row.base_quantity,
        waste_factor=row.waste_factor,
        final_quantity=row.final_quantity,
        unit=row.unit,
        packaging_unit=row.packaging_unit,
        packaging_quantity=row.packaging_quantity,
        unit_price=row.unit_price,
        subtotal=row.subtotal,
        trace_info=TraceInfo.model_validate(row.trace_info),
    )


def run_from_model(row: CalculationRunModel, include_lines: bool = True) -> CalculationRun:
    return CalculationRun(
        run_id=row.run_id,
        project_id=row.project_id,
        category_l1=row.category_l1,
        rule_set_version=row.rule_set_version,
        input_snapshot=row.input_snapshot,
        input_hash=row.input_hash,
        status=RunStatus(row.status),
        failure_reason=FailureReason(row.failure_reason) if row.failure_reason else None,
        result_summary=(
            ResultSummary.model_validate(row.result_summary) if row.result_summary else None
        ),
        error_log=[ItemError.model_validate(entry) for entry in row.error_log or []],
        duration_ms=row.duration_ms,
        created_at=row.created_at,
        completed_at=row.completed_at,
        lines=[_line_from_model(line) for line in row.lines] if include_lines else [],
    )


async def insert_pending(
    session: AsyncSession,
    *,
    project_id: str | None,
    category_l1: str,
    rule_set_version: str,
    input_snapshot: dict[str, Any],
    input_hash: str,
    created_at: datetime,
) -> UUID:
    """Insert a PENDING run. Raises IntegrityError if (hash, version) exists."""
    row = CalculationRunModel(
        project_id=project_id,
        category_l1=category_l1,
        rule_set_version=rule_set_version,
        input_snapshot=input_snapshot,
        input_hash=input_hash,
        status=RunStatus.PENDING.value,
        error_log=[],
        created_at=created_at,
    )
    session.add(row)
    await session.flush()
    return row.run_id


async def find_by_hash(
    session: AsyncSession, input_hash: str, rule_set_version: str
) -> CalculationRunModel | None:
    result = await session.execute(
        select(CalculationRunModel)
        .options(selectinload(CalculationRunModel.lines))
        .where(
            CalculationRunModel.input_hash == input_hash,
            CalculationRunModel.rule_set_version == rule_set_version,
        )
    )
    return result.scalar_one_or_none()


async def load_run(session: AsyncSession, run_id: UUID) -> CalculationRunModel | None:
    result = await session.execute(
        select(CalculationRunModel)
        .options(selectinload(CalculationRunModel.lines))
        .where(CalculationRunModel.run_id == run_id)
    )
    return result.scalar_one_or_none()


async def transition(
    session: AsyncSession,
    run_id: UUID,
    target: RunStatus,
    **values: Any,
) -> bool:
    """Compare-and-swap the run into ``target``; False if the run was elsewhere."""
    allowed = [status.value for status in sources_for(target)]
    result = await session.execute(
        update(CalculationRunModel)
        .where(
            CalculationRunModel.run_id == run_id,
            CalculationRunModel.status.in_(allowed),
        )
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_runs(
    session: AsyncSession,
    project_id: str | None = None,
    category_l1: str | None = None,
    status: RunStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CalculationRunModel], int]:
    """Runs newest first, plus the total count for pagination."""
    filters = []
    if project_id is not None:
        filters.append(CalculationRunModel.project_id == project_id)
    if category_l1 is not None:
        filters.append(CalculationRunModel.category_l1 == category_l1)
    if status is not None:
        filters.append(CalculationRunModel.status == status.value)

    total = (
        await session.execute(select(func.count()).select_from(CalculationRunModel).where(*filters))
    ).scalar_one()

    result = await session.execute(
        select(CalculationRunModel)
        .where(*filters)
        .order_by(CalculationRunModel.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars()), total
