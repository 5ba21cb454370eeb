from __future__ import annotations

import time
from typing import Optional

from src.core.logger import get_logger
from src.exchange.exceptions import ExchangeError, ExternalUnavailable
from src.exchange.solana_rpc import SolanaRpcClient
from src.intel.models import TokenFeatures

logger = get_logger("chain_intelligence")


class MintNotFound(ExchangeError):
    """No account exists at the given mint address."""


class NotAMint(ExchangeError):
    """The account exists but is not an SPL token mint."""


class ChainIntelligence:
    """
    Token features read from chain state.

    Holder count and age are bounded scans. Liquidity and 24h volume are not
    derivable from the mint account and report 0 here.
    """

    MAX_HOLDER_ACCOUNTS = 2000
    MAX_SIGNATURE_PAGES = 10
    SIGNATURE_PAGE_SIZE = 1000

    def __init__(self, rpc: SolanaRpcClient):
        self.rpc = rpc

    async def get_features(self, mint: str) -> TokenFeatures:
        account = await self.rpc.get_parsed_account(mint)
        if not account:
            raise MintNotFound(f"Mint account not found: {mint}")
        data = account.get("data") or {}
        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not isinstance(parsed, dict) or data.get("program") != "spl-token" or parsed.get("type") != "mint":
            raise NotAMint(f"Not an SPL token mint: {mint}")
        info = parsed.get("info") or {}

        supply_raw = await self.rpc.get_token_supply_raw(mint)
        largest = await self.rpc.get_token_largest_accounts_raw(mint)
        top = largest[0] if largest else 0
        top_holder_pct = (top * 10_000 // supply_raw) / 100 if supply_raw > 0 else 0.0

        return TokenFeatures(
            mint=mint,
            age_hours=await self._estimate_age_hours(mint),
            holder_count=await self._estimate_holder_count(mint),
            top_holder_pct=top_holder_pct,
            liquidity_sol=0.0,
            volume24h_sol=0.0,
            has_frozen_authority=info.get("freezeAuthority") is not None,
            has_revoked_mint_authority=info.get("mintAuthority") is None,
        )

    async def _estimate_holder_count(self, mint: str) -> int:
        try:
            return min(await self.rpc.count_token_accounts(mint), self.MAX_HOLDER_ACCOUNTS)
        except ExternalUnavailable as e:
            # Many public nodes disable getProgramAccounts.
            logger.debug("Holder scan unavailable", mint=mint, error=repr(e))
            return 0

    async def _estimate_age_hours(self, mint: str) -> float:
        before: Optional[str] = None
        oldest_block_time: Optional[int] = None
        for _ in range(self.MAX_SIGNATURE_PAGES):
            sigs = await self.rpc.get_signatures(mint, limit=self.SIGNATURE_PAGE_SIZE, before=before)
            if not sigs:
                break
            last = sigs[-1]
            if isinstance(last.get("blockTime"), int):
                oldest_block_time = last["blockTime"]
            before = last.get("signature")
            if len(sigs) < self.SIGNATURE_PAGE_SIZE:
                break
        if oldest_block_time is None:
            return 0.0
        return max(0.0, (time.time() - oldest_block_time) / 3600.0)
