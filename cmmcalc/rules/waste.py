"""Waste factor resolution.

Precedence, first hit wins:

1. the best WASTE conversion rule for the item (formula gives the fraction)
2. the most specific waste-factor table row of the pinned rule set
3. the material's default waste factor
4. zero
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from decimal import Decimal

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure, ResolutionFailure, RuleResolutionError
from cmmcalc.models import ConversionRule, MaterialMaster, RuleType, WasteFactor, WasteResolution, WasteSource
from cmmcalc.rules.formula import FormulaEvaluator
from cmmcalc.rules.resolver import RuleQuery, RuleResolver

ZERO = Decimal("0")


def _row_matches(row: WasteFactor, query: RuleQuery, scenario: str | None) -> bool:
    if not row.is_active:
        return False
    if row.scenario is not None and row.scenario != scenario:
        return False
    pairs = (
        (row.category_l1, query.scope.category_l1),
        (row.category_l2, query.scope.category_l2),
        (row.material_code, query.material_code),
    )
    return all(wanted is None or wanted == actual for wanted, actual in pairs)


def _row_specificity(row: WasteFactor) -> tuple[int, int, int]:
    if row.material_code:
        depth = 3
    elif row.category_l2:
        depth = 2
    elif row.category_l1:
        depth = 1
    else:
        depth = 0
    populated = sum(
        1 for value in (row.category_l1, row.category_l2, row.material_code) if value is not None
    )
    return (depth, populated, 1 if row.scenario is not None else 0)


class WasteFactorResolver:
    def __init__(self, resolver: RuleResolver, evaluator: FormulaEvaluator) -> None:
        self.resolver = resolver
        self.evaluator = evaluator

    def best_table_row(self, query: RuleQuery, scenario: str | None) -> WasteFactor | None:
        rows = [
            row
            for row in self.resolver.snapshot.waste_factors
            if _row_matches(row, query, scenario)
        ]
        if not rows:
            return None

        rows.sort(key=_row_specificity, reverse=True)
        best_key = _row_specificity(rows[0])
        tied = [row for row in rows if _row_specificity(row) == best_key]
        if len(tied) > 1:
            ids = sorted(str(row.id) for row in tied)
            raise RuleResolutionError(
                ResolutionFailure.AMBIGUOUS,
                f"{len(tied)} waste factors tie for {query.describe()}: {', '.join(ids)}",
                candidates=ids,
            )
        return rows[0]

    def resolve(
        self,
        query: RuleQuery,
        bind: Callable[[ConversionRule], Mapping[str, Decimal]],
        material: MaterialMaster | None = None,
        scenario: str | None = None,
    ) -> WasteResolution:
        """Waste fraction for one item.

        ``bind`` supplies formula bindings for a WASTE rule.

        Raises:
            RuleResolutionError: AMBIGUOUS rules or table rows
            FormulaEvaluationError: WASTE formula failed or went negative
        """
        rule = self.resolver.resolve_optional(query, RuleType.WASTE)
        if rule is not None:
            factor = self.evaluator.evaluate(rule.formula, bind(rule))
            if factor < 0:
                raise FormulaEvaluationError(
                    FormulaFailure.INVALID_RESULT,
                    f"Waste factor {factor} is negative",
                    rule.formula,
                )
            return WasteResolution(factor=factor, source=WasteSource.RULE, source_id=str(rule.id))

        row = self.best_table_row(query, scenario)
        if row is not None:
            return WasteResolution(factor=row.factor, source=WasteSource.TABLE, source_id=str(row.id))

        if material is not None and material.default_waste_factor > 0:
            return WasteResolution(
                factor=material.default_waste_factor,
                source=WasteSource.MATERIAL_DEFAULT,
                source_id=material.code,
            )

        return WasteResolution(factor=ZERO, source=WasteSource.NONE)
