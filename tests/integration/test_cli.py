"""Integration tests for the cmmcalc command line.

Each test points DATABASE_URL at a fresh SQLite file and drives the typer app
through CliRunner.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from cmmcalc.cli import app
from cmmcalc.config import reset_config

pytestmark = pytest.mark.integration

runner = CliRunner()


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    reset_config()
    return tmp_path


@pytest.fixture
def seeded(database):
    assert runner.invoke(app, ["init"]).exit_code == 0
    assert runner.invoke(app, ["seed"]).exit_code == 0
    return database


class TestSetup:
    """Test init and seed."""

    def test_init_and_seed(self, database):
        init = runner.invoke(app, ["init"])
        seed = runner.invoke(app, ["seed"])

        assert init.exit_code == 0
        assert "Database initialized" in init.output
        assert seed.exit_code == 0
        assert "Reference data loaded" in seed.output

    def test_second_seed_is_noop(self, seeded):
        result = runner.invoke(app, ["seed"])

        assert result.exit_code == 0
        assert "already present" in result.output

    def test_seed_missing_file(self, database, tmp_path):
        result = runner.invoke(app, ["seed", "--file", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 1


class TestReferenceCommands:
    """Test read-only commands against seeded data."""

    def test_taxonomy(self, seeded):
        result = runner.invoke(app, ["taxonomy", "INT"])

        assert result.exit_code == 0
        assert "INT_TILE" in result.output
        assert "CON_REBAR" not in result.output

    def test_taxonomy_unknown_trade(self, seeded):
        assert runner.invoke(app, ["taxonomy", "XYZ"]).exit_code == 1

    def test_rulesets(self, seeded):
        result = runner.invoke(app, ["rulesets"])

        assert result.exit_code == 0
        assert "v1.0.0" in result.output

    def test_promote_unknown_version(self, seeded):
        result = runner.invoke(app, ["promote", "v9.9.9"])

        assert result.exit_code == 1

    def test_estimate(self, seeded):
        result = runner.invoke(
            app, ["estimate", "--structure", "RC", "--floors", "5", "--gfa", "500"]
        )

        assert result.exit_code == 0
        assert "RC_RESIDENTIAL_LOW" in result.output
        assert "60,000" in result.output

    def test_convert(self, seeded):
        result = runner.invoke(app, ["convert", "REBAR_D13", "1000", "m", "kg"])

        assert result.exit_code == 0
        assert "994" in result.output

    def test_convert_incompatible(self, seeded):
        assert runner.invoke(app, ["convert", "TILE_60X60", "5", "kg"]).exit_code == 1

    def test_convert_unknown_material(self, seeded):
        assert runner.invoke(app, ["convert", "NOPE", "1", "m2"]).exit_code == 1


class TestRunCommands:
    """Test submitting and inspecting runs."""

    @pytest.fixture
    def request_file(self, tmp_path):
        path = tmp_path / "request.yaml"
        path.write_text(
            "project_id: P-CLI\n"
            "category_l1: INT\n"
            "work_items:\n"
            "  - item_code: F-01\n"
            "    category_l2: INT_TILE\n"
            "    category_l3: INT_TILE_FLOOR\n"
            "    material_code: TILE_60X60\n"
            "    quantity: '100'\n"
            "    unit: m2\n",
            encoding="utf-8",
        )
        return path

    def test_run_json_then_show(self, seeded, request_file):
        submitted = runner.invoke(app, ["run", str(request_file), "--json"])

        assert submitted.exit_code == 0
        run = json.loads(submitted.output)
        assert run["status"] == "SUCCESS"
        assert run["lines"][0]["packaging_quantity"] == 77

        shown = runner.invoke(app, ["show-run", run["run_id"], "--json"])
        assert json.loads(shown.output)["input_hash"] == run["input_hash"]

        listed = runner.invoke(app, ["runs", "--project", "P-CLI"])
        assert listed.exit_code == 0
        assert "No runs found" not in listed.output

    def test_cancel_finished_run(self, seeded, request_file):
        run = json.loads(runner.invoke(app, ["run", str(request_file), "--json"]).output)

        result = runner.invoke(app, ["cancel", run["run_id"]])

        assert result.exit_code == 1

    def test_invalid_request_file(self, seeded, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("category_l1: INT\nwork_items: [{item_code: X}]\n", encoding="utf-8")

        assert runner.invoke(app, ["run", str(path)]).exit_code == 1

    def test_show_run_bad_id(self, seeded):
        assert runner.invoke(app, ["show-run", "not-a-uuid"]).exit_code == 1
