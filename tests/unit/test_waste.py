"""Unit tests for waste factor precedence."""

from __future__ import annotations

from decimal import Decimal

import pytest

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure, ResolutionFailure, RuleResolutionError
from cmmcalc.models import RuleType, TaxonomyScope, WasteFactor, WasteSource
from cmmcalc.rules.formula import FormulaEvaluator
from cmmcalc.rules.resolver import RuleQuery, RuleResolver
from cmmcalc.rules.waste import WasteFactorResolver

VERSION = "v-test"


def bind(rule):
    return {"quantity": Decimal("100")}


def row(factor: str, **kwargs) -> WasteFactor:
    return WasteFactor(rule_set_version=VERSION, factor=Decimal(factor), **kwargs)


@pytest.fixture
def tile_query() -> RuleQuery:
    return RuleQuery(
        scope=TaxonomyScope(category_l1="INT", category_l2="INT_TILE", category_l3="INT_TILE_FLOOR"),
        material_code="TILE_60X60",
    )


@pytest.fixture
def make_resolver(snapshot_factory):
    def _make(rules=(), rows=()) -> WasteFactorResolver:
        snapshot = snapshot_factory(list(rules), list(rows))
        return WasteFactorResolver(RuleResolver(snapshot), FormulaEvaluator())

    return _make


class TestPrecedence:
    """Rule, then table row, then material default, then zero."""

    def test_rule_beats_table(self, make_resolver, rule_factory, tile_query, materials):
        rule = rule_factory(RuleType.WASTE, "0.10", category_l1="INT", category_l2="INT_TILE")
        resolver = make_resolver([rule], [row("0.20", category_l1="INT", category_l2="INT_TILE")])

        waste = resolver.resolve(tile_query, bind, materials["TILE_60X60"])

        assert waste.factor == Decimal("0.10")
        assert waste.source is WasteSource.RULE
        assert waste.source_id == str(rule.id)

    def test_rule_formula_uses_bindings(self, make_resolver, rule_factory, tile_query):
        rule = rule_factory(RuleType.WASTE, "min(0.15, 5 / quantity)", category_l1="INT")
        resolver = make_resolver([rule])

        waste = resolver.resolve(tile_query, bind)

        assert waste.factor == Decimal("0.05")

    def test_table_when_no_rule(self, make_resolver, tile_query, materials):
        table_row = row("0.12", category_l1="INT", category_l2="INT_TILE")
        resolver = make_resolver(rows=[table_row])

        waste = resolver.resolve(tile_query, bind, materials["TILE_60X60"])

        assert waste.factor == Decimal("0.12")
        assert waste.source is WasteSource.TABLE
        assert waste.source_id == str(table_row.id)

    def test_material_default(self, make_resolver, materials):
        paint = RuleQuery(
            scope=TaxonomyScope(category_l1="INT", category_l2="INT_PAINT"),
            material_code="PAINT_LATEX",
        )

        waste = make_resolver().resolve(paint, bind, materials["PAINT_LATEX"])

        assert waste.factor == Decimal("0.05")
        assert waste.source is WasteSource.MATERIAL_DEFAULT
        assert waste.source_id == "PAINT_LATEX"

    def test_zero_when_nothing_applies(self, make_resolver, tile_query, materials):
        waste = make_resolver().resolve(tile_query, bind, materials["TILE_60X60"])

        assert waste.factor == Decimal("0")
        assert waste.source is WasteSource.NONE
        assert waste.source_id is None

    def test_negative_rule_result(self, make_resolver, rule_factory, tile_query):
        rule = rule_factory(RuleType.WASTE, "0 - 0.1", category_l1="INT")

        with pytest.raises(FormulaEvaluationError) as exc_info:
            make_resolver([rule]).resolve(tile_query, bind)

        assert exc_info.value.kind is FormulaFailure.INVALID_RESULT


class TestTableRows:
    """Test table row matching and ranking."""

    def test_material_row_beats_category_rows(self, make_resolver, tile_query):
        rows = [
            row("0.05", category_l1="INT"),
            row("0.08", category_l1="INT", category_l2="INT_TILE"),
            row("0.03", material_code="TILE_60X60"),
        ]

        waste = make_resolver(rows=rows).resolve(tile_query, bind)

        assert waste.factor == Decimal("0.03")

    def test_scenario_row_only_for_its_scenario(self, make_resolver, tile_query):
        rows = [
            row("0.08", category_l1="INT", category_l2="INT_TILE"),
            row("0.15", category_l1="INT", category_l2="INT_TILE", scenario="RENOVATION"),
        ]
        resolver = make_resolver(rows=rows)

        assert resolver.resolve(tile_query, bind).factor == Decimal("0.08")
        assert resolver.resolve(tile_query, bind, scenario="NEW_BUILD").factor == Decimal("0.08")
        assert resolver.resolve(tile_query, bind, scenario="RENOVATION").factor == Decimal("0.15")

    def test_inactive_rows_skipped(self, make_resolver, tile_query):
        rows = [
            row("0.50", category_l1="INT", category_l2="INT_TILE", is_active=False),
            row("0.05", category_l1="INT"),
        ]

        assert make_resolver(rows=rows).resolve(tile_query, bind).factor == Decimal("0.05")

    def test_other_subtrade_rows_skipped(self, make_resolver, tile_query):
        rows = [row("0.50", category_l1="INT", category_l2="INT_PAINT")]

        waste = make_resolver(rows=rows).resolve(tile_query, bind)

        assert waste.source is WasteSource.NONE

    def test_tied_rows_are_ambiguous(self, make_resolver, tile_query):
        rows = [
            row("0.05", category_l1="INT", category_l2="INT_TILE"),
            row("0.06", category_l1="INT", category_l2="INT_TILE"),
        ]

        with pytest.raises(RuleResolutionError) as exc_info:
            make_resolver(rows=rows).resolve(tile_query, bind)

        assert exc_info.value.kind is ResolutionFailure.AMBIGUOUS
        assert len(exc_info.value.candidates) == 2

    def test_negative_factor_rejected_at_load(self):
        with pytest.raises(ValueError):
            row("-0.1", category_l1="INT")
