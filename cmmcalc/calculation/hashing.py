"""Input normalisation and hashing for run idempotency.

Two requests that differ only in key order, unit spelling, whitespace or
trailing zeros normalise to the same snapshot and therefore the same hash.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any

from cmmcalc.models import CalculationRequest, WorkItem
from cmmcalc.units.converter import normalize_unit


def _number(value: Decimal) -> str:
    normalized = value.normalize()
    # normalize() turns 100 into 1E+2
    return format(normalized, "f") if normalized == normalized.to_integral_value() else str(normalized)


def _params(values: dict[str, Decimal]) -> dict[str, str]:
    return {key.strip(): _number(value) for key, value in sorted(values.items())}


def _item(item: WorkItem) -> dict[str, Any]:
    normalized: dict[str, Any] = {
        "item_code": item.item_code.strip(),
        "category_l2": item.category_l2.strip(),
        "quantity": _number(item.quantity),
        "unit": normalize_unit(item.unit),
    }
    if item.category_l3:
        normalized["category_l3"] = item.category_l3.strip()
    if item.material_code:
        normalized["material_code"] = item.material_code.strip()
    if item.rule_type is not None:
        normalized["rule_type"] = item.rule_type.value
    if item.params:
        normalized["params"] = _params(item.params)
    return normalized


def normalize_snapshot(request: CalculationRequest) -> dict[str, Any]:
    """JSON-safe canonical form of a request (stored as the run's input snapshot)."""
    snapshot: dict[str, Any] = {
        "category_l1": request.category_l1.strip(),
        "work_items": [_item(item) for item in request.work_items],
    }
    if request.project_id:
        snapshot["project_id"] = request.project_id.strip()
    if request.scenario:
        snapshot["scenario"] = request.scenario.strip()
    if request.building_params:
        snapshot["building_params"] = _params(request.building_params)
    return snapshot


def compute_input_hash(snapshot: dict[str, Any], rule_set_version: str) -> str:
    """SHA-256 of the canonical snapshot JSON joined with the rule-set version."""
    payload = json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256()
    digest.update(payload.encode("utf-8"))
    digest.update(b"|")
    digest.update(rule_set_version.encode("utf-8"))
    return digest.hexdigest()
