"""Rule sets, rule resolution, formulas and waste factors."""

from cmmcalc.rules.formula import FormulaEvaluator, compile_formula, variables_of
from cmmcalc.rules.registry import RuleSetRegistry, RuleSnapshot
from cmmcalc.rules.resolver import RuleQuery, RuleResolver
from cmmcalc.rules.waste import WasteFactorResolver

__all__ = [
    "FormulaEvaluator",
    "RuleQuery",
    "RuleResolver",
    "RuleSetRegistry",
    "RuleSnapshot",
    "WasteFactorResolver",
    "compile_formula",
    "variables_of",
]
