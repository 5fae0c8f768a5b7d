"""Price providers used to fill unit prices on breakdown lines.

Pricing is best effort: a failed lookup leaves the line unpriced and is logged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cmmcalc.config import PricingConfig
from cmmcalc.db.connection import get_session
from cmmcalc.db.models import MaterialMasterModel
from cmmcalc.integration.pricing_client import PricingServiceClient

logger = logging.getLogger(__name__)


class PriceProvider(Protocol):
    async def get_unit_price(self, material_code: str) -> Decimal | None:
        ...


class NullPriceProvider:
    """Leaves every line unpriced."""

    async def get_unit_price(self, material_code: str) -> Decimal | None:
        return None


class StaticPriceProvider:
    """Fixed price list (CLI overrides, tests)."""

    def __init__(self, prices: dict[str, Decimal]):
        self.prices = dict(prices)

    async def get_unit_price(self, material_code: str) -> Decimal | None:
        return self.prices.get(material_code)


class MaterialMasterPriceProvider:
    """Reads ``reference_price`` from the material master."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def get_unit_price(self, material_code: str) -> Decimal | None:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                select(MaterialMasterModel.reference_price).where(
                    MaterialMasterModel.code == material_code,
                    MaterialMasterModel.deleted_at.is_(None),
                )
            )
            return result.scalar_one_or_none()


class HttpPriceProvider:
    """Queries the external pricing service."""

    def __init__(self, client: PricingServiceClient):
        self.client = client

    @classmethod
    def from_config(cls, config: PricingConfig) -> HttpPriceProvider:
        if not config.service_url:
            raise ValueError("PRICING_SERVICE_URL is not configured")
        return cls(PricingServiceClient(config.service_url, timeout=config.timeout_seconds))

    async def get_unit_price(self, material_code: str) -> Decimal | None:
        try:
            return await self.client.fetch_unit_price(material_code)
        except httpx.HTTPError as e:
            logger.warning(f"Price lookup failed for {material_code}: {e}")
            return None


async def lookup_prices(
    provider: PriceProvider, material_codes: Iterable[str]
) -> dict[str, Decimal]:
    """Unit price per material code; codes without a price are omitted."""
    prices: dict[str, Decimal] = {}
    for code in sorted(set(material_codes)):
        try:
            price = await provider.get_unit_price(code)
        except Exception as e:
            # Pricing never fails a run
            logger.warning(f"Price provider error for {code}: {e}")
            continue
        if price is not None:
            prices[code] = price
    return prices
