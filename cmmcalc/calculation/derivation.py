"""Per work-item material derivation.

Pure and synchronous: everything it reads (rule snapshot, materials, unit
conversions) is immutable for the duration of a run, so items can be derived
concurrently and in any order.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, DecimalException

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure
from cmmcalc.models import (
    QUANTITY_RULE_TYPES,
    ConversionRule,
    MaterialBreakdownLine,
    MaterialMaster,
    RuleType,
    TaxonomyScope,
    TraceInfo,
    WorkItem,
)
from cmmcalc.rules.bindings import BindingContext, bind_variables
from cmmcalc.rules.formula import FormulaEvaluator
from cmmcalc.rules.registry import RuleSnapshot
from cmmcalc.rules.resolver import RuleQuery, RuleResolver
from cmmcalc.rules.waste import WasteFactorResolver
from cmmcalc.units.converter import UnitConverter, normalize_unit, to_packaging

DEFAULT_PACKAGING_UNIT = "pkg"
WASTE_DECIMALS = 4


def quantize(value: Decimal, decimals: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


@dataclass
class Derivation:
    """Everything one run needs to turn work items into breakdown lines."""

    snapshot: RuleSnapshot
    category_l1: str
    materials: Mapping[str, MaterialMaster] = field(default_factory=dict)
    converter: UnitConverter = field(default_factory=UnitConverter.with_defaults)
    evaluator: FormulaEvaluator = field(default_factory=FormulaEvaluator)
    building_params: Mapping[str, Decimal] = field(default_factory=dict)
    scenario: str | None = None
    quantity_decimals: int = 4

    def __post_init__(self) -> None:
        self.resolver = RuleResolver(self.snapshot)
        self.waste = WasteFactorResolver(self.resolver, self.evaluator)

    def query_for(self, item: WorkItem) -> RuleQuery:
        return RuleQuery(
            scope=TaxonomyScope(
                category_l1=self.category_l1,
                category_l2=item.category_l2,
                category_l3=item.category_l3,
            ),
            material_code=item.material_code,
        )

    def quantity_rule(self, item: WorkItem, query: RuleQuery) -> ConversionRule:
        if item.rule_type is not None:
            return self.resolver.resolve(query, item.rule_type)
        return self.resolver.resolve_first(query, QUANTITY_RULE_TYPES)

    def derive(self, item: WorkItem) -> MaterialBreakdownLine:
        """One breakdown line for ``item``.

        Raises:
            RuleResolutionError: No quantity rule, or an ambiguous one
            FormulaEvaluationError: A formula failed or produced an invalid value,
                including quantities too large to hold at the configured precision
            IncompatibleUnits: The rule's unit cannot be converted to the material's
        """
        try:
            return self._derive(item)
        except DecimalException as exc:
            raise FormulaEvaluationError(
                FormulaFailure.INVALID_RESULT,
                f"Quantity for {item.item_code} cannot be represented: {exc.__class__.__name__}",
            ) from exc

    def _derive(self, item: WorkItem) -> MaterialBreakdownLine:
        query = self.query_for(item)
        rule = self.quantity_rule(item, query)

        material_code = item.material_code or rule.target_material
        material = self.materials.get(material_code) if material_code else None
        context = BindingContext(item=item, material=material, building_params=self.building_params)

        # 1. formula
        bindings = bind_variables(rule, context)
        formula_result = self.evaluator.evaluate(rule.formula, bindings)
        if formula_result < 0:
            raise FormulaEvaluationError(
                FormulaFailure.INVALID_RESULT,
                f"Base quantity {formula_result} is negative",
                rule.formula,
            )
        formula_unit = rule.output_unit or item.unit

        # 2. convert into the material's base unit
        unit = material.base_unit if material is not None else formula_unit
        conversion_factor = None
        base_quantity = formula_result
        if normalize_unit(formula_unit) != normalize_unit(unit):
            conversion_factor = self.converter.factor_for(formula_unit, unit, material_code)
            base_quantity = formula_result * conversion_factor
        base_quantity = quantize(base_quantity, self.quantity_decimals)

        # 3. waste
        waste = self.waste.resolve(
            query,
            bind=lambda waste_rule: bind_variables(waste_rule, context, quantity=base_quantity),
            material=material,
            scenario=self.scenario,
        )
        waste_factor = quantize(waste.factor, WASTE_DECIMALS)
        final_quantity = quantize(base_quantity * (1 + waste_factor), self.quantity_decimals)

        # 4. packaging
        packaging_unit = None
        packaging_quantity = None
        packaging_size = None
        packaging_source = None
        pack_rule = self.resolver.resolve_optional(query, RuleType.PACKAGING)
        if pack_rule is not None:
            packaging_size = self.evaluator.evaluate(
                pack_rule.formula, bind_variables(pack_rule, context, quantity=final_quantity)
            )
            if packaging_size <= 0:
                raise FormulaEvaluationError(
                    FormulaFailure.INVALID_RESULT,
                    f"Packaging size {packaging_size} is not positive",
                    pack_rule.formula,
                )
            packaging_unit = pack_rule.output_unit or DEFAULT_PACKAGING_UNIT
            packaging_source = f"RULE:{pack_rule.id}"
        elif material is not None and material.packaging_size is not None:
            packaging_size = material.packaging_size
            packaging_unit = material.packaging_unit or DEFAULT_PACKAGING_UNIT
            packaging_source = "MATERIAL"
        if packaging_size is not None:
            packaging_quantity = to_packaging(final_quantity, packaging_size)

        trace = TraceInfo(
            rule_id=rule.id,
            rule_type=rule.rule_type,
            rule_set_version=self.snapshot.version,
            formula=rule.formula,
            bindings=bindings,
            formula_result=formula_result,
            formula_unit=formula_unit,
            waste=waste,
            conversion_factor=conversion_factor,
            final_quantity=final_quantity,
            packaging_source=packaging_source,
            packaging_size=packaging_size,
        )

        return MaterialBreakdownLine(
            source_work_item_code=item.item_code,
            category_l1=self.category_l1,
            category_l2=item.category_l2,
            category_l3=item.category_l3,
            material_code=material_code,
            material_name=material.name if material is not None else (material_code or item.item_code),
            spec=material.specification if material is not None else None,
            base_quantity=base_quantity,
            waste_factor=waste_factor,
            final_quantity=final_quantity,
            unit=unit,
            packaging_unit=packaging_unit,
            packaging_quantity=packaging_quantity,
            trace_info=trace,
        )
