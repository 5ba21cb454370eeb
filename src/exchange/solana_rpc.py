"""
Async Solana JSON-RPC client.

Calls go to a prioritized endpoint list; a failed call rotates to the next
endpoint and retries up to ``max_retries`` times. Callers must not assume the
same endpoint serves consecutive calls.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.core.logger import get_logger
from src.exchange.exceptions import ExternalUnavailable, RateLimitError, TransactionFailed

logger = get_logger("solana_rpc")

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
LAMPORTS_PER_SOL = 1_000_000_000


class RpcCallError(ExternalUnavailable):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any):
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


class SolanaRpcClient:
    def __init__(
        self,
        endpoints: List[str],
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        commitment: str = "confirmed",
    ):
        if not endpoints:
            raise ValueError("at least one RPC endpoint is required")
        self.endpoints = [e.rstrip("/") for e in endpoints]
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = max(0, int(max_retries))
        self.commitment = commitment
        self._index = 0
        self._ids = itertools.count(1)
        self._client: httpx.AsyncClient | None = None

    @property
    def current_endpoint(self) -> str:
        return self.endpoints[self._index % len(self.endpoints)]

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Content-Type": "application/json"},
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _rotate(self) -> None:
        if len(self.endpoints) > 1:
            self._index = (self._index + 1) % len(self.endpoints)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if self._client is None:
            await self.initialize()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            endpoint = self.current_endpoint
            try:
                resp = await self._client.post(endpoint, json=payload)
                if resp.status_code == 429:
                    retry_after = float(resp.headers.get("retry-after", "0") or 0)
                    raise RateLimitError(f"{method} rate limited", retry_after=retry_after)
                resp.raise_for_status()
                body = resp.json()
                if body.get("error"):
                    raise RpcCallError(method, body["error"])
                return body.get("result")
            except (httpx.HTTPError, ValueError, ExternalUnavailable) as e:
                last_error = e
                logger.warning(
                    "RPC call failed",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    error=repr(e),
                )
                self._rotate()
                if isinstance(e, RateLimitError) and e.retry_after > 0:
                    await asyncio.sleep(min(e.retry_after, 5.0))
        if isinstance(last_error, ExternalUnavailable):
            raise last_error
        raise ExternalUnavailable(f"RPC {method} unavailable: {last_error!r}")

    # ------------------------------------------------------------------
    # Accounts and balances
    # ------------------------------------------------------------------

    async def health(self) -> bool:
        try:
            await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
            return True
        except ExternalUnavailable:
            return False

    async def get_balance_sol(self, owner: str) -> float:
        result = await self.call("getBalance", [owner, {"commitment": self.commitment}])
        return int(result.get("value", 0)) / LAMPORTS_PER_SOL

    async def get_parsed_account(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getAccountInfo", [address, {"encoding": "jsonParsed", "commitment": self.commitment}]
        )
        return (result or {}).get("value")

    async def get_mint_decimals(self, mint: str) -> int:
        account = await self.get_parsed_account(mint)
        decimals = (((account or {}).get("data") or {}).get("parsed") or {}).get("info", {}).get("decimals")
        if not isinstance(decimals, int):
            raise ExternalUnavailable(f"Unable to read mint decimals for {mint}")
        return decimals

    async def get_token_balance_raw(self, owner: str, mint: str) -> int:
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        total = 0
        for acct in (result or {}).get("value", []):
            info = (((acct.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
            amount = (info.get("tokenAmount") or {}).get("amount")
            try:
                total += int(amount)
            except (TypeError, ValueError):
                continue
        return total

    async def get_token_supply_raw(self, mint: str) -> int:
        result = await self.call("getTokenSupply", [mint, {"commitment": self.commitment}])
        return int(((result or {}).get("value") or {}).get("amount") or 0)

    async def get_token_largest_accounts_raw(self, mint: str) -> List[int]:
        result = await self.call("getTokenLargestAccounts", [mint, {"commitment": self.commitment}])
        amounts = []
        for entry in (result or {}).get("value", []):
            try:
                amounts.append(int(entry.get("amount")))
            except (TypeError, ValueError):
                continue
        return sorted((a for a in amounts if a > 0), reverse=True)

    async def get_signatures(
        self, address: str, limit: int = 1000, before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        opts: Dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            opts["before"] = before
        return list(await self.call("getSignaturesForAddress", [address, opts]) or [])

    async def count_token_accounts(self, mint: str) -> int:
        result = await self.call(
            "getProgramAccounts",
            [
                TOKEN_PROGRAM_ID,
                {
                    "commitment": self.commitment,
                    "encoding": "base64",
                    "dataSlice": {"offset": 0, "length": 0},
                    "filters": [{"dataSize": 165}, {"memcmp": {"offset": 0, "bytes": mint}}],
                },
            ],
        )
        return len(result or [])

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def send_raw_transaction(self, signed_b64: str, max_retries: int = 2) -> str:
        return str(await self.call(
            "sendTransaction",
            [signed_b64, {"encoding": "base64", "skipPreflight": False,
                          "preflightCommitment": self.commitment, "maxRetries": max_retries}],
        ))

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": False}]
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def confirm_transaction(self, signature: str, timeout_ms: int, poll_seconds: float = 1.0) -> None:
        """Poll until the signature is confirmed, failed, or the deadline passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        while True:
            status = await self.get_signature_status(signature)
            if status:
                if status.get("err"):
                    raise TransactionFailed(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if loop.time() >= deadline:
                raise TransactionFailed(f"Transaction {signature} not confirmed within {timeout_ms}ms")
            await asyncio.sleep(poll_seconds)

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "commitment": self.commitment,
                         "maxSupportedTransactionVersion": 0}],
        )


# ----------------------------------------------------------------------
# Settlement deltas from a confirmed transaction
# ----------------------------------------------------------------------

def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = (((tx.get("transaction") or {}).get("message") or {}).get("accountKeys")) or []
    return [k.get("pubkey") if isinstance(k, dict) else str(k) for k in keys]


def sol_delta_from_tx(tx: Dict[str, Any], owner: str) -> float:
    """Owner's SOL balance change (post - pre), net of fees."""
    keys = _account_keys(tx)
    if owner not in keys:
        raise ValueError("Owner not in transaction keys")
    idx = keys.index(owner)
    meta = tx.get("meta") or {}
    pre = (meta.get("preBalances") or [])
    post = (meta.get("postBalances") or [])
    if idx >= len(pre) or idx >= len(post):
        raise ValueError("Missing SOL balances")
    return (int(post[idx]) - int(pre[idx])) / LAMPORTS_PER_SOL


def token_delta_from_tx(tx: Dict[str, Any], owner: str, mint: str) -> Tuple[int, int]:
    """Owner's raw token balance change for ``mint`` and the mint decimals."""
    meta = tx.get("meta") or {}

    def _find(entries: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for b in entries or []:
            if b.get("mint") == mint and b.get("owner") in (owner, None):
                return b
        return None

    pre = _find(meta.get("preTokenBalances"))
    post = _find(meta.get("postTokenBalances"))
    pre_amt = int(((pre or {}).get("uiTokenAmount") or {}).get("amount") or 0)
    post_amt = int(((post or {}).get("uiTokenAmount") or {}).get("amount") or 0)
    decimals = ((post or pre or {}).get("uiTokenAmount") or {}).get("decimals") or 0
    return post_amt - pre_amt, int(decimals)
