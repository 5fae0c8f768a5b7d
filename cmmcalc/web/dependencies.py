"""Shared dependencies for CMMCalc web routes.

Route handlers receive the long-lived engine objects through FastAPI's
Depends() system; tests replace them with ``app.dependency_overrides``.

Usage:
    from fastapi import Depends
    from cmmcalc.web.dependencies import get_orchestrator

    @router.get("/runs/{run_id}")
    async def show_run(run_id: UUID, orchestrator=Depends(get_orchestrator)):
        return await orchestrator.get_run(run_id)
"""

from __future__ import annotations

from cmmcalc.calculation.orchestrator import CalculationOrchestrator
from cmmcalc.calculation.pricing import HttpPriceProvider, MaterialMasterPriceProvider, PriceProvider
from cmmcalc.config import get_config
from cmmcalc.rules.registry import RuleSetRegistry

# Global singletons (one registry holds the current-version pointer)
_registry: RuleSetRegistry | None = None
_price_provider: PriceProvider | None = None
_orchestrator: CalculationOrchestrator | None = None


def get_registry() -> RuleSetRegistry:
    global _registry
    if _registry is None:
        _registry = RuleSetRegistry()
    return _registry


def get_price_provider() -> PriceProvider:
    """External pricing service when PRICING_SERVICE_URL is set, else material reference prices."""
    global _price_provider
    if _price_provider is None:
        pricing = get_config().pricing
        if pricing.enabled:
            _price_provider = HttpPriceProvider.from_config(pricing)
        else:
            _price_provider = MaterialMasterPriceProvider()
    return _price_provider


def get_orchestrator() -> CalculationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CalculationOrchestrator(
            registry=get_registry(),
            price_provider=get_price_provider(),
        )
    return _orchestrator


async def close_dependencies() -> None:
    """Release the pricing client and forget the singletons (app shutdown)."""
    global _registry, _price_provider, _orchestrator
    if isinstance(_price_provider, HttpPriceProvider):
        await _price_provider.client.close()
    _registry = None
    _price_provider = None
    _orchestrator = None
