"""Calculation runs: derivation, accumulation, pricing and orchestration."""

from cmmcalc.calculation.accumulator import BreakdownAccumulator
from cmmcalc.calculation.derivation import Derivation
from cmmcalc.calculation.orchestrator import CalculationOrchestrator
from cmmcalc.calculation.pricing import (
    HttpPriceProvider,
    MaterialMasterPriceProvider,
    NullPriceProvider,
    PriceProvider,
)

__all__ = [
    "BreakdownAccumulator",
    "CalculationOrchestrator",
    "Derivation",
    "HttpPriceProvider",
    "MaterialMasterPriceProvider",
    "NullPriceProvider",
    "PriceProvider",
]
