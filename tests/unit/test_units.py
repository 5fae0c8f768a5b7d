"""Unit tests for unit normalization, conversion and packaging."""

from __future__ import annotations

from decimal import Decimal

import pytest

from cmmcalc.errors import IncompatibleUnits
from cmmcalc.models import ItemErrorType, UnitConversion
from cmmcalc.units.converter import PING_TO_M2, UnitConverter, normalize_unit, to_packaging


class TestNormalizeUnit:
    """Test unit spelling normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("m2", "m2"),
            ("M²", "m2"),
            ("平方公尺", "m2"),
            ("  sqm ", "m2"),
            ("立方米", "m3"),
            ("公斤", "kg"),
            ("坪", "ping"),
            ("Tonnes", "t"),
            ("pcs", "ea"),
            ("Litre", "l"),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_unit(raw) == expected

    def test_unknown_unit_passes_through_lowercased(self):
        assert normalize_unit("Box") == "box"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_unit_rejected(self, raw):
        with pytest.raises(ValueError):
            normalize_unit(raw)


class TestUnitConverter:
    """Test factor lookup order and reverse conversion."""

    def test_same_unit_is_one(self):
        assert UnitConverter().factor_for("m²", "m2") == Decimal("1")

    def test_defaults(self):
        converter = UnitConverter.with_defaults()

        assert converter.factor_for("坪", "m2") == PING_TO_M2
        assert converter.convert(Decimal("2"), "t", "kg") == Decimal("2000")

    def test_bidirectional_reverse(self):
        converter = UnitConverter.with_defaults()

        assert converter.factor_for("kg", "t") == Decimal("1") / Decimal("1000")

    def test_one_way_conversion_has_no_reverse(self):
        converter = UnitConverter(
            [UnitConversion(from_unit="bag", to_unit="kg", factor=Decimal("50"), is_bidirectional=False)]
        )

        assert converter.factor_for("bag", "kg") == Decimal("50")
        with pytest.raises(IncompatibleUnits):
            converter.factor_for("kg", "bag")

    def test_material_specific_before_generic(self):
        converter = UnitConverter(
            [
                UnitConversion(from_unit="m3", to_unit="kg", factor=Decimal("2000")),
                UnitConversion(material_code="CONC_210", from_unit="m3", to_unit="kg", factor=Decimal("2400")),
            ]
        )

        assert converter.factor_for("m3", "kg", "CONC_210") == Decimal("2400")
        assert converter.factor_for("m3", "kg", "SAND") == Decimal("2000")
        assert converter.factor_for("m3", "kg") == Decimal("2000")

    def test_material_factor_not_used_for_other_materials(self):
        converter = UnitConverter(
            [UnitConversion(material_code="CONC_210", from_unit="m3", to_unit="kg", factor=Decimal("2400"))]
        )

        with pytest.raises(IncompatibleUnits) as exc_info:
            converter.factor_for("m3", "kg", "CONC_280")

        assert exc_info.value.error_type is ItemErrorType.INCOMPATIBLE_UNITS
        assert "CONC_280" in str(exc_info.value)

    def test_incompatible_units(self):
        with pytest.raises(IncompatibleUnits):
            UnitConverter.with_defaults().factor_for("m2", "kg")

    def test_explicit_factor_bypasses_lookup(self):
        converter = UnitConverter()

        assert converter.convert(Decimal("3"), "m2", "kg", factor=Decimal("10")) == Decimal("30")

    def test_registration_normalizes_units(self):
        converter = UnitConverter(
            [UnitConversion(material_code="WOOD_BOARD", from_unit="Sheet", to_unit="㎡", factor=Decimal("2.9768"))]
        )

        assert converter.factor_for("sheet", "m2", "WOOD_BOARD") == Decimal("2.9768")
        assert len(converter) == 1


class TestToPackaging:
    """Test rounding up to whole packages."""

    def test_rounds_up(self):
        assert to_packaging(Decimal("110"), Decimal("1.44")) == 77

    def test_exact_multiple(self):
        assert to_packaging(Decimal("37.8"), Decimal("18.9")) == 2

    def test_zero_quantity(self):
        assert to_packaging(Decimal("0"), Decimal("1.44")) == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            to_packaging(Decimal("10"), Decimal("0"))
