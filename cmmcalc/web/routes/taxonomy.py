"""Trade taxonomy routes.

Routes:
- GET /api/cmm/taxonomy            - Full L1 > L2 > L3 tree
- GET /api/cmm/taxonomy/{l1_code}  - Tree for one trade
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from cmmcalc.db.connection import get_session
from cmmcalc.errors import ScopeMismatch, UnknownCategory
from cmmcalc.taxonomy.tree import load_taxonomy

router = APIRouter(prefix="/api/cmm", tags=["taxonomy"])


@router.get("/taxonomy")
async def get_taxonomy(include_inactive: bool = Query(default=False)):
    """Nested category tree ordered by sort order."""
    async with get_session() as session:
        taxonomy = await load_taxonomy(session)

    return {"categories": taxonomy.as_tree(include_inactive=include_inactive)}


@router.get("/taxonomy/{l1_code}")
async def get_trade(l1_code: str, include_inactive: bool = Query(default=False)):
    async with get_session() as session:
        taxonomy = await load_taxonomy(session)

    try:
        tree = taxonomy.as_tree(l1=l1_code, include_inactive=include_inactive)
    except (UnknownCategory, ScopeMismatch) as e:
        raise HTTPException(status_code=404, detail=str(e))

    return tree[0]
