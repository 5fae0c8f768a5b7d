"""HTTP client for an external material pricing service."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class PricingServiceClient:
    """Thin async client for ``GET {base_url}/prices/{material_code}``.

    Expected response body::

        {"material_code": "TILE_60X60", "unit_price": "450.00", "currency": "TWD"}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": "CMMCalc/0.1"},
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> PricingServiceClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _get(self, path: str) -> httpx.Response:
        return await self.client.get(path)

    async def fetch_unit_price(self, material_code: str) -> Decimal | None:
        """Unit price for a material, None when the service does not know it.

        Raises:
            httpx.HTTPError: Transport failures after retries, or 5xx responses
        """
        response = await self._get(f"/prices/{material_code}")
        if response.status_code == 404:
            return None
        response.raise_for_status()

        payload = response.json()
        raw = payload.get("unit_price")
        if raw is None:
            return None
        try:
            price = Decimal(str(raw))
        except InvalidOperation:
            logger.warning(f"Pricing service returned invalid price {raw!r} for {material_code}")
            return None
        if price < 0:
            logger.warning(f"Pricing service returned negative price for {material_code}")
            return None
        return price
