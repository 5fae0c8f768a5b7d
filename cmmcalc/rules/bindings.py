"""Bind a rule's declared variables to work-item, material and building values.

A rule's ``variables`` maps formula names to sources::

    item.quantity        the work item quantity
    item.<param>         a work item parameter (e.g. item.thickness)
    material.<attr>      a material master attribute (e.g. material.density)
    building.<param>     a request-level building parameter
    1.05                 a numeric literal

``quantity`` is always bound, to the quantity the rule applies to.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure
from cmmcalc.models import ConversionRule, MaterialMaster, WorkItem

MATERIAL_ATTRIBUTES = frozenset(
    {
        "density",
        "unit_weight",
        "standard_weight_per_length",
        "packaging_size",
        "default_waste_factor",
    }
)


@dataclass(frozen=True)
class BindingContext:
    item: WorkItem
    material: MaterialMaster | None = None
    building_params: Mapping[str, Decimal] = field(default_factory=dict)


def _literal(source: str) -> Decimal | None:
    try:
        value = Decimal(source)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def resolve_source(source: str, context: BindingContext) -> Decimal:
    """Value of one variable source.

    Raises:
        FormulaEvaluationError: UNKNOWN_VARIABLE when the source has no value,
            SYNTAX_ERROR when the source is not a recognised form
    """
    source = source.strip()
    literal = _literal(source)
    if literal is not None:
        return literal

    namespace, _, key = source.partition(".")
    if not key:
        raise FormulaEvaluationError(
            FormulaFailure.SYNTAX_ERROR, f"Unsupported variable source '{source}'"
        )

    value: Decimal | None
    if namespace == "item":
        value = context.item.quantity if key == "quantity" else context.item.params.get(key)
    elif namespace == "building":
        value = context.building_params.get(key)
    elif namespace == "material":
        if key not in MATERIAL_ATTRIBUTES:
            raise FormulaEvaluationError(
                FormulaFailure.SYNTAX_ERROR, f"Unsupported material attribute '{key}'"
            )
        value = getattr(context.material, key) if context.material is not None else None
    else:
        raise FormulaEvaluationError(
            FormulaFailure.SYNTAX_ERROR, f"Unsupported variable source '{source}'"
        )

    if value is None:
        raise FormulaEvaluationError(
            FormulaFailure.UNKNOWN_VARIABLE, f"No value for variable source '{source}'"
        )
    return value


def bind_variables(
    rule: ConversionRule,
    context: BindingContext,
    quantity: Decimal | None = None,
) -> dict[str, Decimal]:
    """Bindings for ``rule``; ``quantity`` defaults to the work item quantity."""
    bindings = {"quantity": context.item.quantity if quantity is None else quantity}
    for name, source in rule.variables.items():
        bindings[name] = resolve_source(source, context)
    return bindings
