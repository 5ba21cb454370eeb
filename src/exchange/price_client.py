from __future__ import annotations

import math
from typing import Dict, Iterable

import httpx

from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable

logger = get_logger("price_client")


class PriceClient:
    """USD price feed. Mints without a usable price are left out of the result."""

    def __init__(self, price_url: str = "https://price.jup.ag/v6/price", timeout_seconds: float = 8.0):
        self.price_url = price_url
        self.timeout_seconds = float(timeout_seconds)
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_usd_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        ids = sorted({m for m in mints if m})
        if not ids:
            return {}
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.get(self.price_url, params={"ids": ",".join(ids)})
            resp.raise_for_status()
            data = (resp.json() or {}).get("data") or {}
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalUnavailable(f"Price feed unavailable: {e!r}") from e

        prices: Dict[str, float] = {}
        for mint in ids:
            entry = data.get(mint)
            if not isinstance(entry, dict):
                continue
            try:
                price = float(entry.get("price"))
            except (TypeError, ValueError):
                continue
            if math.isfinite(price) and price > 0:
                prices[mint] = price
        return prices
