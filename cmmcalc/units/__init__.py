"""Unit normalisation, conversion and packaging rounding."""

from cmmcalc.units.converter import (
    DEFAULT_CONVERSIONS,
    PING_TO_M2,
    UnitConverter,
    load_converter,
    normalize_unit,
    to_packaging,
)

__all__ = [
    "DEFAULT_CONVERSIONS",
    "PING_TO_M2",
    "UnitConverter",
    "load_converter",
    "normalize_unit",
    "to_packaging",
]
