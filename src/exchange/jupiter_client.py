from __future__ import annotations

import base64
from typing import Any, Dict, Optional

import httpx

from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable, PermanentExchangeError, RateLimitError

logger = get_logger("jupiter_client")


class JupiterVenueClient:
    """Minimal async Jupiter swap API client (quote + unsigned swap transaction)."""

    QUOTE_TIMEOUT_SECONDS = 15.0
    SWAP_TIMEOUT_SECONDS = 20.0

    def __init__(self, base_url: str = "https://quote-api.jup.ag"):
        self.base_url = (base_url or "https://quote-api.jup.ag").rstrip("/")
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"Content-Type": "application/json"})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> None:
        if resp.status_code == 429:
            raise RateLimitError(f"Jupiter {what} rate limited")
        if resp.status_code >= 500:
            raise ExternalUnavailable(f"Jupiter {what} failed: {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentExchangeError(f"Jupiter {what} rejected: {resp.status_code} {resp.text[:200]}")

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as e:
            raise ExternalUnavailable(f"Jupiter {what} returned a non-JSON body: {resp.text[:120]!r}") from e
        if not isinstance(body, dict):
            raise PermanentExchangeError(f"Jupiter {what} returned {type(body).__name__}, expected an object")
        return body

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = False,
    ) -> Dict[str, Any]:
        if self._client is None:
            await self.initialize()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
            "onlyDirectRoutes": "true" if only_direct_routes else "false",
        }
        try:
            resp = await self._client.get(
                f"{self.base_url}/v6/quote", params=params, timeout=self.QUOTE_TIMEOUT_SECONDS
            )
        except httpx.HTTPError as e:
            raise ExternalUnavailable(f"Jupiter quote unreachable: {e!r}") from e
        self._check(resp, "quote")
        return self._json(resp, "quote")

    async def build_swap(self, quote: Dict[str, Any], user_public_key: str,
                         priority_fee_lamports: Optional[int] = None) -> bytes:
        """Return the unsigned serialized transaction for ``quote``."""
        if self._client is None:
            await self.initialize()
        body: Dict[str, Any] = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        if priority_fee_lamports:
            body["prioritizationFeeLamports"] = int(priority_fee_lamports)
        try:
            resp = await self._client.post(
                f"{self.base_url}/v6/swap", json=body, timeout=self.SWAP_TIMEOUT_SECONDS
            )
        except httpx.HTTPError as e:
            raise ExternalUnavailable(f"Jupiter swap unreachable: {e!r}") from e
        self._check(resp, "swap")
        tx_b64 = self._json(resp, "swap").get("swapTransaction")
        if not tx_b64:
            raise PermanentExchangeError("Jupiter swap response missing swapTransaction")
        return base64.b64decode(tx_b64)
