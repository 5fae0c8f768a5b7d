"""CMMCalc web route modules.

Each module exports a ``router`` (APIRouter instance); ``cmmcalc.web.app``
includes them all.

Usage:
    from cmmcalc.web.routes import runs
    app.include_router(runs.router)
"""

from cmmcalc.web.routes import (
    estimates,
    health,
    materials,
    rulesets,
    runs,
    taxonomy,
)

__all__ = [
    "estimates",
    "health",
    "materials",
    "rulesets",
    "runs",
    "taxonomy",
]
