"""Unit tests for request normalisation and input hashing."""

from __future__ import annotations

from decimal import Decimal

from cmmcalc.calculation.hashing import compute_input_hash, normalize_snapshot
from cmmcalc.models import CalculationRequest


def request(**overrides) -> CalculationRequest:
    data = {
        "project_id": "P-001",
        "category_l1": "INT",
        "work_items": [
            {
                "item_code": "F-01",
                "category_l2": "INT_TILE",
                "category_l3": "INT_TILE_FLOOR",
                "material_code": "TILE_60X60",
                "quantity": "100",
                "unit": "m2",
                "params": {"thickness": "0.01", "area": "5"},
            }
        ],
    }
    data.update(overrides)
    return CalculationRequest.model_validate(data)


class TestNormalizeSnapshot:
    """Test the canonical request form."""

    def test_trailing_zeros_and_unit_spelling(self):
        plain = normalize_snapshot(request())
        spelled = normalize_snapshot(
            request(
                work_items=[
                    {
                        "item_code": " F-01 ",
                        "category_l2": "INT_TILE",
                        "category_l3": "INT_TILE_FLOOR",
                        "material_code": "TILE_60X60",
                        "quantity": "100.00",
                        "unit": "平方公尺",
                        "params": {"area": "5.0", "thickness": "0.010"},
                    }
                ]
            )
        )

        assert plain == spelled
        assert plain["work_items"][0]["quantity"] == "100"
        assert plain["work_items"][0]["unit"] == "m2"

    def test_params_sorted(self):
        item = normalize_snapshot(request())["work_items"][0]

        assert list(item["params"]) == ["area", "thickness"]

    def test_optional_fields_omitted(self):
        snapshot = normalize_snapshot(request(project_id=None))

        assert "project_id" not in snapshot
        assert "scenario" not in snapshot
        assert "building_params" not in snapshot

    def test_scenario_and_building_params(self):
        snapshot = normalize_snapshot(request(scenario="RENOVATION", building_params={"floors": Decimal("12.0")}))

        assert snapshot["scenario"] == "RENOVATION"
        assert snapshot["building_params"] == {"floors": "12"}

    def test_fractional_quantity_kept(self):
        snapshot = normalize_snapshot(
            request(work_items=[{"item_code": "A", "category_l2": "INT_TILE", "quantity": "12.50", "unit": "m2"}])
        )

        assert snapshot["work_items"][0]["quantity"] == "12.5"

    def test_item_order_matters(self):
        items = [
            {"item_code": "A", "category_l2": "INT_TILE", "quantity": "1", "unit": "m2"},
            {"item_code": "B", "category_l2": "INT_TILE", "quantity": "2", "unit": "m2"},
        ]

        forward = normalize_snapshot(request(work_items=items))
        backward = normalize_snapshot(request(work_items=list(reversed(items))))

        assert forward != backward


class TestComputeInputHash:
    """Test hash stability and sensitivity."""

    def test_same_input_same_hash(self):
        assert compute_input_hash(normalize_snapshot(request()), "v1.0.0") == compute_input_hash(
            normalize_snapshot(request()), "v1.0.0"
        )

    def test_version_changes_hash(self):
        snapshot = normalize_snapshot(request())

        assert compute_input_hash(snapshot, "v1.0.0") != compute_input_hash(snapshot, "v1.1.0")

    def test_project_changes_hash(self):
        assert compute_input_hash(normalize_snapshot(request()), "v1") != compute_input_hash(
            normalize_snapshot(request(project_id="P-002")), "v1"
        )

    def test_hex_sha256(self):
        digest = compute_input_hash(normalize_snapshot(request()), "v1")

        assert len(digest) == 64
        int(digest, 16)
