"""Rule set routes.

Routes:
- GET /api/cmm/rulesets          - All versions, newest first
- GET /api/cmm/rulesets/current  - The current version
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from cmmcalc.errors import UnknownRuleSet
from cmmcalc.models import RuleSet
from cmmcalc.rules.registry import RuleSetRegistry
from cmmcalc.web.dependencies import get_registry

router = APIRouter(prefix="/api/cmm", tags=["rulesets"])


@router.get("/rulesets", response_model=list[RuleSet])
async def list_rule_sets(registry: RuleSetRegistry = Depends(get_registry)):
    return await registry.list_versions()


@router.get("/rulesets/current", response_model=RuleSet)
async def current_rule_set(registry: RuleSetRegistry = Depends(get_registry)):
    try:
        return await registry.get_current()
    except UnknownRuleSet:
        raise HTTPException(status_code=404, detail="No rule set has been promoted")
