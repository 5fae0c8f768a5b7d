"""Early-stage quantity estimates from building profiles.

A building profile carries empirical per-floor-area factors (e.g. 120 kg of
rebar per m2) for a structure type, usage and floor band. Estimates multiply
those factors by the gross floor area.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cmmcalc.db.models import BuildingProfileModel
from cmmcalc.errors import ProfileNotFoundError
from cmmcalc.models import (
    BuildingProfile,
    BuildingUsage,
    EstimatedQuantity,
    EstimateResult,
    StructureType,
)
from cmmcalc.units.converter import UnitConverter

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _q(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class BuildingProfileEstimator:
    def __init__(
        self,
        profiles: Iterable[BuildingProfile],
        converter: UnitConverter | None = None,
    ) -> None:
        self.profiles = {profile.code: profile for profile in profiles}
        self.converter = converter or UnitConverter.with_defaults()

    @classmethod
    async def from_session(cls, session: AsyncSession) -> BuildingProfileEstimator:
        result = await session.execute(select(BuildingProfileModel))
        return cls(BuildingProfile.model_validate(row) for row in result.scalars())

    def list_profiles(
        self,
        structure_type: StructureType | None = None,
        usage: BuildingUsage | None = None,
    ) -> list[BuildingProfile]:
        profiles = [
            p
            for p in self.profiles.values()
            if (structure_type is None or p.structure_type is structure_type)
            and (usage is None or p.usage is usage)
        ]
        return sorted(profiles, key=lambda p: (p.structure_type.value, p.usage.value, p.min_floors, p.code))

    def get_profile(self, code: str) -> BuildingProfile:
        try:
            return self.profiles[code]
        except KeyError:
            raise ProfileNotFoundError(f"Building profile {code} not found") from None

    def select_profile(
        self,
        structure_type: StructureType,
        usage: BuildingUsage,
        floors: int,
        profile_code: str | None = None,
    ) -> BuildingProfile:
        """Profile to estimate with.

        An explicit ``profile_code`` wins. Otherwise the profiles for the
        structure type and usage whose floor band contains ``floors``, lowest
        ``min_floors`` first, then by code.

        Raises:
            ProfileNotFoundError: No profile matches
        """
        if profile_code is not None:
            return self.get_profile(profile_code)

        matches = [
            p
            for p in self.profiles.values()
            if p.structure_type is structure_type and p.usage is usage and p.covers(floors)
        ]
        if not matches:
            raise ProfileNotFoundError(
                f"No building profile for {structure_type.value}/{usage.value} "
                f"with {floors} floors"
            )
        matches.sort(key=lambda p: (p.min_floors, p.code))
        if len(matches) > 1:
            logger.debug(
                f"{len(matches)} profiles cover {floors} floors, using {matches[0].code}"
            )
        return matches[0]

    def estimate(
        self,
        structure_type: StructureType,
        usage: BuildingUsage,
        floors: int,
        gross_floor_area: Decimal,
        profile_code: str | None = None,
    ) -> EstimateResult:
        """Quantities for a building of ``gross_floor_area`` m2.

        Raises:
            ProfileNotFoundError: No profile matches
            ValueError: Non-positive floor area or floor count
        """
        if gross_floor_area <= 0:
            raise ValueError("gross_floor_area must be positive")
        if floors < 1:
            raise ValueError("floors must be at least 1")

        profile = self.select_profile(structure_type, usage, floors, profile_code)

        details = [
            EstimatedQuantity(
                quantity_type=name,
                amount=_q(factor.value * gross_floor_area),
                unit=factor.output_unit,
                factor=factor.value,
                factor_unit=factor.unit,
            )
            for name, factor in profile.factors.items()
        ]

        return EstimateResult(
            profile_code=profile.code,
            profile_name=profile.name,
            structure_type=profile.structure_type,
            usage=profile.usage,
            floors=floors,
            gross_floor_area=gross_floor_area,
            gross_floor_area_ping=_q(self.converter.convert(gross_floor_area, "m2", "ping")),
            quantities={d.quantity_type: d.amount for d in details},
            details=details,
        )
