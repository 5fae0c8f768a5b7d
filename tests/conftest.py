"""Pytest configuration and fixtures for CMMCalc tests.

Provides a small in-memory taxonomy, material master and rule snapshot for
unit tests, and file-backed SQLite session factories for integration tests.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from cmmcalc.config import get_config, reset_config
from cmmcalc.db.connection import create_session_factory, get_session
from cmmcalc.db.models import Base
from cmmcalc.models import (
    CategoryNode,
    ConversionRule,
    MaterialMaster,
    RuleSet,
    RuleType,
    WasteFactor,
)
from cmmcalc.rules.registry import RuleSnapshot
from cmmcalc.seed import load_seed_file, seed_reference_data

RULE_SET_VERSION = "v-test"


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("PRICING_SERVICE_URL", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def taxonomy_nodes() -> list[CategoryNode]:
    """Two trades with a few sub-trades and work-item templates."""
    return [
        CategoryNode(code="CON", name="營建工程", level=1, sort_order=1),
        CategoryNode(code="INT", name="室內裝潢", level=1, sort_order=2),
        CategoryNode(code="CON_REBAR", name="鋼筋", level=2, parent_code="CON", default_unit="kg"),
        CategoryNode(code="CON_CONC", name="混凝土", level=2, parent_code="CON", default_unit="m3"),
        CategoryNode(
            code="CON_REBAR_D13",
            name="D13 鋼筋",
            level=3,
            parent_code="CON_REBAR",
            default_materials=["REBAR_D13"],
        ),
        CategoryNode(code="INT_TILE", name="磁磚", level=2, parent_code="INT", default_unit="m2", sort_order=1),
        CategoryNode(code="INT_PAINT", name="油漆", level=2, parent_code="INT", default_unit="m2", sort_order=2),
        CategoryNode(
            code="INT_TILE_FLOOR",
            name="地磚",
            level=3,
            parent_code="INT_TILE",
            default_materials=["TILE_60X60"],
            sort_order=1,
        ),
        CategoryNode(code="INT_TILE_BATH", name="浴室磁磚", level=3, parent_code="INT_TILE", sort_order=2),
        CategoryNode(
            code="INT_PAINT_ENAMEL",
            name="調合漆",
            level=3,
            parent_code="INT_PAINT",
            is_active=False,
        ),
    ]


@pytest.fixture
def materials() -> dict[str, MaterialMaster]:
    """Material master keyed by code."""
    rows = [
        MaterialMaster(
            code="TILE_60X60",
            name="拋光石英磚 60x60",
            category="TILE",
            category_l1="INT",
            category_l2="INT_TILE",
            base_unit="m2",
            packaging_unit="box",
            packaging_size=Decimal("1.44"),
            reference_price=Decimal("850"),
        ),
        MaterialMaster(
            code="PAINT_LATEX",
            name="水泥漆",
            category="PAINT",
            category_l1="INT",
            category_l2="INT_PAINT",
            base_unit="l",
            default_waste_factor=Decimal("0.05"),
            packaging_unit="pail",
            packaging_size=Decimal("18.9"),
        ),
        MaterialMaster(
            code="REBAR_D13",
            name="竹節鋼筋 D13",
            category="REBAR",
            category_l1="CON",
            category_l2="CON_REBAR",
            base_unit="kg",
            standard_weight_per_length=Decimal("0.994"),
        ),
        MaterialMaster(
            code="CONC_210",
            name="預拌混凝土 210",
            category="CONCRETE",
            category_l1="CON",
            category_l2="CON_CONC",
            base_unit="m3",
            density=Decimal("2400"),
        ),
    ]
    return {row.code: row for row in rows}


@pytest.fixture
def rule_factory():
    """Build ConversionRule instances pinned to the test rule set."""

    def _make(rule_type: RuleType = RuleType.UNIT, formula: str = "quantity", **kwargs: Any) -> ConversionRule:
        return ConversionRule(
            rule_set_version=kwargs.pop("rule_set_version", RULE_SET_VERSION),
            rule_type=rule_type,
            formula=formula,
            **kwargs,
        )

    return _make


@pytest.fixture
def snapshot_factory():
    """Build a RuleSnapshot from rules and waste-factor rows."""

    def _make(
        rules: list[ConversionRule],
        waste_factors: list[WasteFactor] | None = None,
    ) -> RuleSnapshot:
        return RuleSnapshot(
            rule_set=RuleSet(version=RULE_SET_VERSION, name="Test rules", is_current=True, is_editable=False),
            rules=tuple(rules),
            waste_factors=tuple(waste_factors or ()),
        )

    return _make


@pytest.fixture
def interior_rules(rule_factory) -> list[ConversionRule]:
    """Rules for the tile and paint examples."""
    return [
        rule_factory(RuleType.UNIT, "quantity", category_l1="INT"),
        rule_factory(
            RuleType.ASSEMBLY,
            "quantity * coats / coverage",
            category_l1="INT",
            category_l2="INT_PAINT",
            variables={"coats": "2", "coverage": "10"},
            output_unit="l",
        ),
        rule_factory(RuleType.WASTE, "0.10", category_l1="INT", category_l2="INT_TILE", priority=1),
        rule_factory(
            RuleType.PACKAGING,
            "0.9",
            category_l1="INT",
            category_l2="INT_TILE",
            category_l3="INT_TILE_BATH",
            output_unit="box",
        ),
    ]


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Empty file-backed SQLite database.

    A file (rather than ``:memory:``) lets concurrent sessions see each
    other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/cmm.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def seeded_session_factory(session_factory):
    """Database loaded with the bundled reference data."""
    seed = load_seed_file(get_config().seed_file_path)
    async with get_session(session_factory) as session:
        await seed_reference_data(session, seed)
    return session_factory
