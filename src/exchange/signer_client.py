"""
Signer client - the only path to a signature.

The signer is a separate process with its own policy (program allowlist,
fee-payer identity, compute and lamport ceilings). A policy refusal raises
``SignerRejected`` and is never retried; network failures raise
``ExternalUnavailable`` after bounded retries.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Optional

import httpx

from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable, PermanentExchangeError, SignerRejected

logger = get_logger("signer_client")


class SignerClient:
    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        api_key: str = "",
        timeout_seconds: float = 5.0,
        retry_attempts: int = 3,
    ):
        self.base_url = (base_url or "http://localhost:3001").rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout_seconds = float(timeout_seconds)
        self.retry_attempts = max(0, int(retry_attempts))
        self._client: httpx.AsyncClient | None = None
        self._public_key: Optional[str] = None

    async def initialize(self) -> None:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["x-api-key"] = self.api_key
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, headers=headers)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        if self._client is None:
            await self.initialize()
        last_error: Optional[Exception] = None
        for attempt in range(self.retry_attempts + 1):
            try:
                resp = await self._client.request(method, f"{self.base_url}{path}", json=json)
            except httpx.HTTPError as e:
                last_error = e
                logger.warning("Signer request failed", path=path, attempt=attempt + 1, error=repr(e))
                await asyncio.sleep(min(0.25 * (2 ** attempt), 2.0))
                continue
            if 400 <= resp.status_code < 500:
                raise SignerRejected(f"Signer refused {path}: {resp.status_code} {resp.text[:200]}")
            if resp.status_code >= 500:
                last_error = ExternalUnavailable(f"Signer {path} returned {resp.status_code}")
                logger.warning("Signer server error", path=path, status_code=resp.status_code)
                await asyncio.sleep(min(0.25 * (2 ** attempt), 2.0))
                continue
            try:
                body = resp.json()
            except ValueError as e:
                raise ExternalUnavailable(f"Signer {path} returned a non-JSON body") from e
            if not isinstance(body, dict):
                raise PermanentExchangeError(f"Signer {path} returned {type(body).__name__}, expected an object")
            return body
        raise ExternalUnavailable(f"Signer unavailable for {path}: {last_error!r}")

    async def health(self) -> bool:
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.get(f"{self.base_url}/health")
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Signer health check failed", error=repr(e))
            return False

    async def get_public_key(self) -> str:
        if self._public_key is None:
            body = await self._request("GET", "/v1/public-key")
            key = str(body.get("publicKey") or "").strip()
            if not key:
                raise ExternalUnavailable("Signer returned no public key")
            self._public_key = key
        return self._public_key

    async def sign_transaction(self, unsigned_tx: bytes) -> bytes:
        body = await self._request(
            "POST",
            "/v1/sign-transaction",
            json={"transactionBase64": base64.b64encode(unsigned_tx).decode("ascii")},
        )
        signed = body.get("signedTransactionBase64")
        if not signed:
            raise ExternalUnavailable("Signer response missing signedTransactionBase64")
        return base64.b64decode(signed)
