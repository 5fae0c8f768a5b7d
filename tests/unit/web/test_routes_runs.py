"""Tests for cmmcalc.web.routes.runs - calculation run routes."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from cmmcalc.errors import (
    InvalidTransition,
    PersistenceError,
    RunNotFoundError,
    UnknownCategory,
    UnknownRuleSet,
)
from cmmcalc.models import (
    CalculationRequest,
    CalculationRun,
    FailureReason,
    MaterialBreakdownLine,
    ResultSummary,
    RuleType,
    RunStatus,
    TraceInfo,
    WasteResolution,
    WasteSource,
)
from cmmcalc.web.dependencies import get_orchestrator
from cmmcalc.web.routes import runs


@pytest.fixture
def orchestrator():
    return AsyncMock()


@pytest.fixture
def client(orchestrator):
    app = FastAPI()
    app.include_router(runs.router)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return TestClient(app)


@pytest.fixture
def payload() -> dict:
    return {
        "project_id": "P-100",
        "category_l1": "INT",
        "work_items": [
            {
                "item_code": "F-01",
                "category_l2": "INT_TILE",
                "category_l3": "INT_TILE_FLOOR",
                "material_code": "TILE_60X60",
                "quantity": "100",
                "unit": "m2",
            }
        ],
    }


def finished_run(status: RunStatus = RunStatus.SUCCESS, **kwargs) -> CalculationRun:
    run_id = kwargs.pop("run_id", uuid4())
    rule_id = uuid4()
    line = MaterialBreakdownLine(
        run_id=run_id,
        source_work_item_code="F-01",
        category_l1="INT",
        category_l2="INT_TILE",
        category_l3="INT_TILE_FLOOR",
        material_code="TILE_60X60",
        material_name="60x60 porcelain tile",
        base_quantity=Decimal("100"),
        waste_factor=Decimal("0.10"),
        final_quantity=Decimal("110"),
        unit="m2",
        packaging_unit="box",
        packaging_quantity=77,
        trace_info=TraceInfo(
            rule_id=rule_id,
            rule_type=RuleType.UNIT,
            rule_set_version="v1.0.0",
            formula="quantity",
            bindings={"quantity": Decimal("100")},
            formula_result=Decimal("100"),
            formula_unit="m2",
            waste=WasteResolution(factor=Decimal("0.10"), source=WasteSource.RULE),
            final_quantity=Decimal("110"),
        ),
    )
    defaults = {
        "run_id": run_id,
        "project_id": "P-100",
        "category_l1": "INT",
        "rule_set_version": "v1.0.0",
        "input_snapshot": {"category_l1": "INT"},
        "input_hash": "a" * 64,
        "status": status,
        "result_summary": ResultSummary(item_count=1, resolved_count=1, error_count=0, line_count=1),
        "duration_ms": 12,
        "created_at": datetime(2025, 3, 1, tzinfo=timezone.utc),
        "completed_at": datetime(2025, 3, 1, 0, 0, 1, tzinfo=timezone.utc),
        "lines": [line],
    }
    defaults.update(kwargs)
    return CalculationRun(**defaults)


class TestSubmitRun:
    """Test POST /api/cmm/runs."""

    def test_success(self, client, orchestrator, payload):
        run = finished_run()
        orchestrator.submit_run.return_value = run

        response = client.post("/api/cmm/runs", json=payload)

        assert response.status_code == 200
        body = response.json()
        assert body["run_id"] == str(run.run_id)
        assert body["status"] == "SUCCESS"
        assert body["lines"][0]["packaging_quantity"] == 77
        assert body["lines"][0]["trace_info"]["waste"]["source"] == "RULE"

        (request,) = orchestrator.submit_run.await_args.args
        assert isinstance(request, CalculationRequest)
        assert request.work_items[0].quantity == Decimal("100")

    def test_suggested_estimate_lines(self, client, orchestrator, payload):
        run = finished_run()
        priced = run.lines[0].model_copy(update={"unit_price": Decimal("850"), "subtotal": Decimal("93500")})
        orchestrator.submit_run.return_value = run.model_copy(update={"lines": [priced]})

        response = client.post("/api/cmm/runs", json=payload)

        (estimate,) = response.json()["suggested_estimate_lines"]
        assert estimate["id"] == str(priced.id)
        assert estimate["name"] == "60x60 porcelain tile"
        assert Decimal(str(estimate["quantity"])) == Decimal("110")
        assert estimate["unit"] == "m2"
        assert Decimal(str(estimate["unit_price"])) == Decimal("850")
        assert Decimal(str(estimate["subtotal"])) == Decimal("93500")
        assert estimate["category_l2"] == "INT_TILE"
        assert estimate["source_run_id"] == str(run.run_id)

    def test_malformed_body(self, client, orchestrator, payload):
        payload["work_items"][0]["quantity"] = "-1"

        response = client.post("/api/cmm/runs", json=payload)

        assert response.status_code == 422
        orchestrator.submit_run.assert_not_awaited()

    @pytest.mark.parametrize("error", [UnknownCategory("XYZ"), UnknownRuleSet("v9")])
    def test_validation_error(self, client, orchestrator, payload, error):
        orchestrator.submit_run.side_effect = error

        response = client.post("/api/cmm/runs", json=payload)

        assert response.status_code == 422
        assert response.json()["detail"] == str(error)

    def test_persistence_error(self, client, orchestrator, payload):
        orchestrator.submit_run.side_effect = PersistenceError("database unavailable")

        response = client.post("/api/cmm/runs", json=payload)

        assert response.status_code == 503


class TestListRuns:
    """Test GET /api/cmm/runs."""

    def test_lines_omitted(self, client, orchestrator):
        orchestrator.list_runs.return_value = [finished_run(), finished_run(RunStatus.PARTIAL)]

        response = client.get("/api/cmm/runs")

        assert response.status_code == 200
        body = response.json()
        assert body["limit"] == 50
        assert body["offset"] == 0
        assert [r["status"] for r in body["runs"]] == ["SUCCESS", "PARTIAL"]
        assert all("lines" not in r and "suggested_estimate_lines" not in r for r in body["runs"])

    def test_filters_forwarded(self, client, orchestrator):
        orchestrator.list_runs.return_value = []

        response = client.get(
            "/api/cmm/runs",
            params={"project_id": "P-100", "category_l1": "CON", "status": "FAILED", "limit": 5, "offset": 10},
        )

        assert response.status_code == 200
        orchestrator.list_runs.assert_awaited_once_with(
            project_id="P-100",
            category_l1="CON",
            status=RunStatus.FAILED,
            limit=5,
            offset=10,
        )

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 501}, {"offset": -1}, {"status": "DONE"}])
    def test_invalid_query(self, client, params):
        assert client.get("/api/cmm/runs", params=params).status_code == 422


class TestGetRun:
    """Test GET /api/cmm/runs/{run_id}."""

    def test_found(self, client, orchestrator):
        run = finished_run()
        orchestrator.get_run.return_value = run

        response = client.get(f"/api/cmm/runs/{run.run_id}")

        assert response.status_code == 200
        assert len(response.json()["lines"]) == 1
        orchestrator.get_run.assert_awaited_once_with(run.run_id)

    def test_not_found(self, client, orchestrator):
        run_id = uuid4()
        orchestrator.get_run.side_effect = RunNotFoundError(run_id)

        response = client.get(f"/api/cmm/runs/{run_id}")

        assert response.status_code == 404

    def test_bad_uuid(self, client):
        assert client.get("/api/cmm/runs/not-a-uuid").status_code == 422


class TestCancelRun:
    """Test POST /api/cmm/runs/{run_id}/cancel."""

    def test_cancelled(self, client, orchestrator):
        run = finished_run(
            RunStatus.FAILED,
            failure_reason=FailureReason.CANCELLED,
            result_summary=None,
            lines=[],
        )
        orchestrator.cancel_run.return_value = run

        response = client.post(f"/api/cmm/runs/{run.run_id}/cancel")

        assert response.status_code == 200
        assert response.json()["failure_reason"] == "CANCELLED"

    def test_already_finished(self, client, orchestrator):
        orchestrator.cancel_run.side_effect = InvalidTransition("SUCCESS", "FAILED")

        response = client.post(f"/api/cmm/runs/{uuid4()}/cancel")

        assert response.status_code == 409

    def test_unknown_run(self, client, orchestrator):
        run_id = uuid4()
        orchestrator.cancel_run.side_effect = RunNotFoundError(run_id)

        response = client.post(f"/api/cmm/runs/{run_id}/cancel")

        assert response.status_code == 404
