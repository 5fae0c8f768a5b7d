"""Collects a run's breakdown lines and writes them once."""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cmmcalc.db.models import MaterialBreakdownModel
from cmmcalc.models import MaterialBreakdownLine, MaterialTotal, ResultSummary


def line_to_model(line: MaterialBreakdownLine, run_id: UUID, line_no: int) -> MaterialBreakdownModel:
    return MaterialBreakdownModel(
        id=line.id,
        run_id=run_id,
        line_no=line_no,
        source_work_item_code=line.source_work_item_code,
        category_l1=line.category_l1,
        category_l2=line.category_l2,
        category_l3=line.category_l3,
        material_code=line.material_code,
        material_name=line.material_name,
        spec=line.spec,
        base_quantity=line.base_quantity,
        waste_factor=line.waste_factor,
        final_quantity=line.final_quantity,
        unit=line.unit,
        packaging_unit=line.packaging_unit,
        packaging_quantity=line.packaging_quantity,
        unit_price=line.unit_price,
        subtotal=line.subtotal,
        trace_info=line.trace_info.model_dump(mode="json"),
    )


def summarize(
    lines: Iterable[MaterialBreakdownLine], item_count: int, error_count: int
) -> ResultSummary:
    """Per-material totals keyed by (material, unit)."""
    totals: dict[tuple[str, str], MaterialTotal] = {}
    line_count = 0
    total_cost: Decimal | None = None

    for line in lines:
        line_count += 1
        key = (line.material_code or line.material_name, line.unit)
        total = totals.get(key)
        if total is None:
            total = MaterialTotal(
                material_code=line.material_code,
                material_name=line.material_name,
                unit=line.unit,
                final_quantity=Decimal("0"),
                packaging_unit=line.packaging_unit,
            )
            totals[key] = total

        total.final_quantity += line.final_quantity
        total.line_count += 1
        if line.packaging_quantity is not None:
            total.packaging_quantity = (total.packaging_quantity or 0) + line.packaging_quantity
        if line.subtotal is not None:
            total.subtotal = (total.subtotal or Decimal("0")) + line.subtotal
            total_cost = (total_cost or Decimal("0")) + line.subtotal

    return ResultSummary(
        item_count=item_count,
        resolved_count=item_count - error_count,
        error_count=error_count,
        line_count=line_count,
        totals=sorted(totals.values(), key=lambda t: (t.material_code or t.material_name, t.unit)),
        total_cost=total_cost,
    )


class BreakdownAccumulator:
    """Append-only buffer of breakdown lines for one run.

    Lines are frozen models; the accumulator stamps the run id on append and
    refuses further appends once flushed.
    """

    def __init__(self, run_id: UUID) -> None:
        self.run_id = run_id
        self._lines: list[MaterialBreakdownLine] = []
        self._flushed = False

    @property
    def lines(self) -> tuple[MaterialBreakdownLine, ...]:
        return tuple(self._lines)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def append(self, line: MaterialBreakdownLine) -> MaterialBreakdownLine:
        if self._flushed:
            raise RuntimeError(f"Breakdown for run {self.run_id} already flushed")
        stamped = line.model_copy(update={"run_id": self.run_id})
        self._lines.append(stamped)
        return stamped

    def summary(self, item_count: int, error_count: int) -> ResultSummary:
        return summarize(self._lines, item_count, error_count)

    async def flush(self, session: AsyncSession) -> int:
        """Add all lines to ``session`` and seal the accumulator.

        The caller owns the transaction. Flushing again into a fresh session
        (a retry after a failed commit) writes the same lines with the same ids.
        """
        self._flushed = True
        session.add_all(
            line_to_model(line, self.run_id, line_no)
            for line_no, line in enumerate(self._lines, start=1)
        )
        await session.flush()
        return len(self._lines)
