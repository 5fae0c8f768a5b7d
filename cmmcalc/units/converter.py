"""Unit and packaging conversion.

Factors are looked up material-specific first, then generic; a bidirectional
factor also answers the reverse direction as ``1 / factor``.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_CEILING, Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmmcalc.db.models import UnitConversionModel
from cmmcalc.errors import IncompatibleUnits
from cmmcalc.models import UnitConversion


_UNIT_ALIASES: dict[str, tuple[str, ...]] = {
    "m": ("m", "meter", "metre", "meters", "metres", "米", "公尺"),
    "m2": ("m2", "m²", "㎡", "sqm", "sq m", "square meter", "square metres", "平方米", "平方公尺"),
    "m3": ("m3", "m³", "㎥", "cum", "cu m", "cbm", "cubic meter", "cubic metres", "立方米", "立方公尺"),
    "kg": ("kg", "kgs", "kilogram", "kilograms", "公斤"),
    "t": ("t", "ton", "tons", "tonne", "tonnes", "公噸", "噸"),
    "ping": ("ping", "坪"),
    "ea": ("ea", "each", "nr", "no", "pcs", "piece", "pieces", "個", "支"),
    "l": ("l", "liter", "litre", "liters", "litres", "公升"),
}

_ALIAS_LOOKUP = {alias: unit for unit, aliases in _UNIT_ALIASES.items() for alias in aliases}

PING_TO_M2 = Decimal("3.30579")

DEFAULT_CONVERSIONS: tuple[UnitConversion, ...] = (
    UnitConversion(from_unit="ping", to_unit="m2", factor=PING_TO_M2, description="1 坪 = 3.30579 m²"),
    UnitConversion(from_unit="t", to_unit="kg", factor=Decimal("1000")),
    UnitConversion(from_unit="m3", to_unit="l", factor=Decimal("1000")),
)


def normalize_unit(unit: str | None) -> str:
    """Normalize unit to its canonical spelling.

    Unknown units pass through lower-cased so packaging units like ``box`` or
    ``bag`` still compare equal regardless of case.

    Raises:
        ValueError: If unit is empty
    """
    if unit is None or not unit.strip():
        raise ValueError("Unit must not be empty")

    unit_lower = unit.strip().lower()
    return _ALIAS_LOOKUP.get(unit_lower, unit_lower)


def to_packaging(quantity: Decimal, packaging_size: Decimal) -> int:
    """Whole packages needed to hold ``quantity``; always rounds up."""
    if packaging_size <= 0:
        raise ValueError(f"packaging_size must be positive, got {packaging_size}")
    if quantity <= 0:
        return 0
    return int((quantity / packaging_size).to_integral_value(rounding=ROUND_CEILING))


class UnitConverter:
    """Registry of conversion factors keyed by (material, from_unit, to_unit)."""

    def __init__(self, conversions: Iterable[UnitConversion] = ()) -> None:
        self._factors: dict[tuple[str | None, str, str], UnitConversion] = {}
        for conversion in conversions:
            self.register(conversion)

    @classmethod
    def with_defaults(cls, conversions: Iterable[UnitConversion] = ()) -> UnitConverter:
        converter = cls(DEFAULT_CONVERSIONS)
        for conversion in conversions:
            converter.register(conversion)
        return converter

    def register(self, conversion: UnitConversion) -> None:
        key = (
            conversion.material_code,
            normalize_unit(conversion.from_unit),
            normalize_unit(conversion.to_unit),
        )
        self._factors[key] = conversion

    def factor_for(
        self, from_unit: str, to_unit: str, material_code: str | None = None
    ) -> Decimal:
        """Multiplier taking a quantity in ``from_unit`` to ``to_unit``.

        Raises:
            IncompatibleUnits: If no direct or reverse factor is known
        """
        source = normalize_unit(from_unit)
        target = normalize_unit(to_unit)
        if source == target:
            return Decimal("1")

        scopes = (material_code, None) if material_code else (None,)
        for scope in scopes:
            direct = self._factors.get((scope, source, target))
            if direct is not None:
                return direct.factor

            reverse = self._factors.get((scope, target, source))
            if reverse is not None and reverse.is_bidirectional:
                return Decimal("1") / reverse.factor

        raise IncompatibleUnits(from_unit, to_unit, material_code)

    def convert(
        self,
        quantity: Decimal,
        from_unit: str,
        to_unit: str,
        factor: Decimal | None = None,
        material_code: str | None = None,
    ) -> Decimal:
        """Convert ``quantity``; an explicit ``factor`` bypasses the lookup."""
        if factor is None:
            factor = self.factor_for(from_unit, to_unit, material_code)
        return quantity * factor

    def __len__(self) -> int:
        return len(self._factors)


async def load_converter(session: AsyncSession, material_codes: Iterable[str] = ()) -> UnitConverter:
    """Defaults plus the stored generic conversions and those of ``material_codes``."""
    condition = UnitConversionModel.material_code.is_(None)
    codes = sorted(set(material_codes))
    if codes:
        condition = or_(condition, UnitConversionModel.material_code.in_(codes))
    result = await session.execute(select(UnitConversionModel).where(condition))
    return UnitConverter.with_defaults(UnitConversion.model_validate(row) for row in result.scalars())
