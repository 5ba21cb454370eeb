"""
Execution Router - multi-venue swap execution.

Venues are tried in configured order (``execution.venue_order`` first, then
any other enabled venue). Each try is one tx attempt row moving
STARTED -> SUBMITTED -> CONFIRMED or FAILED. A failed try falls through to the
next venue; once a transaction is confirmed the loop stops, and settlement is
read afterwards so a slow RPC can never cause a second swap.

Modes:
- live: quote, build, sign, send, confirm
- paper: quote only, then move the internal ledger and token balances
- shadow: quote and validate, then refuse to send
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from src.core.config import BotConfig, VenueConfig
from src.core.database import now_ms
from src.core.errors import PolicyRejection
from src.core.logger import get_logger
from src.exchange.exceptions import (
    ExchangeError,
    ExternalUnavailable,
    InsufficientFundsError,
    QuoteRejected,
    ShadowSendSuppressed,
    VenueExhausted,
)
from src.exchange.solana_rpc import LAMPORTS_PER_SOL, sol_delta_from_tx, token_delta_from_tx

logger = get_logger("router")

ENTRY = "ENTRY"
EXIT = "EXIT"


@dataclass
class SwapResult:
    signature: str
    venue: str
    simulated: bool
    in_amount: int
    out_amount_raw: Optional[int] = None
    spent_sol: Optional[float] = None
    received_sol: Optional[float] = None
    sold_raw: Optional[int] = None
    decimals: Optional[int] = None


@dataclass
class _Sent:
    signature: str
    venue: VenueConfig
    quote: Dict[str, Any]


def ordered_venues(cfg: BotConfig) -> List[VenueConfig]:
    by_name = {v.name: v for v in cfg.execution.venues}
    out: List[VenueConfig] = []
    for name in cfg.execution.venue_order:
        v = by_name.get(name)
        if v is not None and v.enabled and v not in out:
            out.append(v)
    for v in cfg.execution.venues:
        if v.enabled and v not in out:
            out.append(v)
    return out


def _int_amount(value: Any) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _route_labels(quote: Dict[str, Any]) -> List[str]:
    labels = []
    for step in quote.get("routePlan") or []:
        label = ((step or {}).get("swapInfo") or {}).get("label")
        if label:
            labels.append(str(label))
    return labels


class ExecutionRouter:

    def __init__(
        self,
        cfg: BotConfig,
        db: Any,
        rpc: Any,
        signer: Any,
        venues: Dict[str, Any],
        clock: Callable[[], int] = now_ms,
    ):
        self.cfg = cfg
        self.db = db
        self.rpc = rpc
        self.signer = signer
        self.venues = venues
        self._clock = clock

    @property
    def mode(self) -> str:
        return self.cfg.app.mode

    @property
    def wsol_mint(self) -> str:
        return self.cfg.app.wsol_mint

    def _client_for(self, venue: VenueConfig) -> Any:
        client = self.venues.get(venue.name)
        if client is None:
            raise ExternalUnavailable(f"No client registered for venue {venue.name}")
        return client

    # ------------------------------------------------------------------
    # Quotes and guardrails
    # ------------------------------------------------------------------

    def validate_quote(self, quote: Dict[str, Any], venue: VenueConfig) -> None:
        mev = self.cfg.mev
        if _int_amount(quote.get("outAmount")) <= 0:
            raise QuoteRejected("empty_quote", f"venue={venue.name}")

        # Jupiter reports price impact as a fraction.
        try:
            impact_pct = float(quote.get("priceImpactPct") or 0.0) * 100.0
        except (TypeError, ValueError):
            raise QuoteRejected("bad_price_impact", str(quote.get("priceImpactPct")))
        if impact_pct > mev.max_price_impact_pct:
            raise QuoteRejected("price_impact", f"{impact_pct:.4f}% > {mev.max_price_impact_pct}%")

        steps = len(quote.get("routePlan") or [])
        if steps > mev.max_route_steps:
            raise QuoteRejected("route_steps", f"{steps} > {mev.max_route_steps}")

        if venue.allowed_dex_labels:
            allowed = set(venue.allowed_dex_labels)
            bad = [label for label in _route_labels(quote) if label not in allowed]
            if bad:
                raise QuoteRejected("dex_label", ",".join(sorted(set(bad))))

    async def get_validated_quote(
        self, venue: VenueConfig, input_mint: str, output_mint: str, amount: int
    ) -> Tuple[Dict[str, Any], int]:
        """Quote (and re-quote when the drift check is on), validate, return (quote, quoted_at_ms)."""
        client = self._client_for(venue)
        quote = await client.get_quote(
            input_mint, output_mint, amount, venue.slippage_bps, venue.only_direct_routes
        )
        quoted_at = self._clock()

        max_drift = self.cfg.mev.max_quote_drift_bps
        if max_drift > 0:
            second = await client.get_quote(
                input_mint, output_mint, amount, venue.slippage_bps, venue.only_direct_routes
            )
            first_out = _int_amount(quote.get("outAmount"))
            second_out = _int_amount(second.get("outAmount"))
            if first_out <= 0:
                raise QuoteRejected("empty_quote", f"venue={venue.name}")
            drift_bps = abs(second_out - first_out) * 10_000 / first_out
            if drift_bps > max_drift:
                raise QuoteRejected("quote_drift", f"{drift_bps:.1f}bps > {max_drift}bps")
            quote, quoted_at = second, self._clock()

        self.validate_quote(quote, venue)
        return quote, quoted_at

    def _check_fresh(self, quoted_at_ms: int) -> None:
        limit = self.cfg.mev.require_fresh_quote_ms
        if limit > 0:
            age = self._clock() - quoted_at_ms
            if age > limit:
                raise QuoteRejected("stale_quote", f"{age}ms > {limit}ms")

    # ------------------------------------------------------------------
    # Venue loop
    # ------------------------------------------------------------------

    async def _run_venues(
        self,
        kind: str,
        mint: str,
        amount_sol: Optional[float],
        position_id: Optional[str],
        attempt: Callable[[VenueConfig, int], Awaitable[Any]],
    ) -> Any:
        venues = ordered_venues(self.cfg)
        if not venues:
            raise VenueExhausted("No enabled venues")

        last_error: Optional[BaseException] = None
        for venue in venues:
            attempt_id = await self.db.start_tx_attempt(kind, mint, venue.name, amount_sol, position_id)
            try:
                result = await attempt(venue, attempt_id)
            except (ExchangeError, PolicyRejection) as e:
                last_error = e
                await self.db.mark_tx_failed(attempt_id, str(e) or type(e).__name__)
                logger.warning(
                    "Venue attempt failed",
                    kind=kind,
                    mint=mint,
                    venue=venue.name,
                    error=repr(e),
                )
                continue
            except Exception as e:
                last_error = e
                await self.db.mark_tx_failed(attempt_id, f"unexpected: {type(e).__name__}: {e}")
                logger.error(
                    "Venue attempt raised unexpectedly",
                    kind=kind,
                    mint=mint,
                    venue=venue.name,
                    error=repr(e),
                    exc_info=True,
                )
                continue
            await self.db.mark_tx_confirmed(attempt_id)
            return result
        raise VenueExhausted(f"All venues failed for {kind.lower()} {mint}", last_error=last_error)

    async def _send_live(
        self, venue: VenueConfig, attempt_id: int, input_mint: str, output_mint: str, amount: int, owner: str
    ) -> _Sent:
        quote, quoted_at = await self.get_validated_quote(venue, input_mint, output_mint, amount)
        unsigned = await self._client_for(venue).build_swap(
            quote, owner, priority_fee_lamports=venue.max_priority_fee_lamports
        )
        self._check_fresh(quoted_at)
        signed = await self.signer.sign_transaction(unsigned)
        signature = await self.rpc.send_raw_transaction(
            base64.b64encode(signed).decode("ascii"), max_retries=venue.max_retries
        )
        await self.db.mark_tx_submitted(attempt_id, signature)
        await self.rpc.confirm_transaction(signature, venue.confirmation_timeout_ms)
        return _Sent(signature=signature, venue=venue, quote=quote)

    async def _shadow(
        self, kind: str, mint: str, amount_sol: Optional[float], position_id: Optional[str],
        input_mint: str, output_mint: str, amount: int,
    ) -> SwapResult:
        venues = ordered_venues(self.cfg)
        if not venues:
            raise VenueExhausted("No enabled venues")
        venue = venues[0]
        attempt_id = await self.db.start_tx_attempt(kind, mint, venue.name, amount_sol, position_id)
        try:
            quote, _ = await self.get_validated_quote(venue, input_mint, output_mint, amount)
        except (ExchangeError, PolicyRejection) as e:
            await self.db.mark_tx_failed(attempt_id, str(e) or type(e).__name__)
            raise
        await self.db.mark_tx_failed(attempt_id, "shadow_mode_no_send")
        logger.info(
            "Shadow swap validated, not sent",
            kind=kind,
            mint=mint,
            venue=venue.name,
            out_amount=_int_amount(quote.get("outAmount")),
        )
        raise ShadowSendSuppressed(f"venue={venue.name}")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def execute_entry(
        self, mint: str, size_sol: float, owner: Optional[str] = None, position_id: Optional[str] = None
    ) -> SwapResult:
        lamports = int(size_sol * LAMPORTS_PER_SOL)
        if lamports <= 0:
            raise InsufficientFundsError(f"Entry size too small: {size_sol}")

        if self.mode == "shadow":
            return await self._shadow(ENTRY, mint, size_sol, position_id, self.wsol_mint, mint, lamports)
        if self.mode == "paper":
            return await self._paper_entry(mint, size_sol, lamports, position_id)

        if not owner:
            raise ExternalUnavailable("Owner public key required for live entries")

        async def attempt(venue: VenueConfig, attempt_id: int) -> _Sent:
            return await self._send_live(venue, attempt_id, self.wsol_mint, mint, lamports, owner)

        sent = await self._run_venues(ENTRY, mint, size_sol, position_id, attempt)
        result = SwapResult(
            signature=sent.signature,
            venue=sent.venue.name,
            simulated=False,
            in_amount=lamports,
            out_amount_raw=_int_amount(sent.quote.get("outAmount")) or None,
            spent_sol=size_sol,
        )
        await self._settle_entry(result, owner, mint)
        logger.info("Entry executed", mint=mint, venue=result.venue, signature=result.signature)
        return result

    async def _settle_entry(self, result: SwapResult, owner: str, mint: str) -> None:
        """Replace quoted amounts with what actually moved on chain, when readable."""
        try:
            tx = await self.rpc.get_transaction(result.signature)
        except ExternalUnavailable as e:
            logger.warning("Entry settlement unreadable", signature=result.signature, error=repr(e))
            return
        if not tx:
            logger.warning("Entry transaction not found", signature=result.signature)
            return
        try:
            sol_delta = sol_delta_from_tx(tx, owner)
        except ValueError as e:
            logger.warning("Entry SOL delta unavailable", signature=result.signature, error=str(e))
        else:
            result.spent_sol = -sol_delta if sol_delta < 0 else 0.0
        token_delta, decimals = token_delta_from_tx(tx, owner, mint)
        result.out_amount_raw = token_delta if token_delta > 0 else None
        result.decimals = decimals

    async def _paper_entry(
        self, mint: str, size_sol: float, lamports: int, position_id: Optional[str]
    ) -> SwapResult:
        balance = await self.db.get_paper_sol_balance(self.cfg.paper.initial_sol)
        if balance - self.cfg.paper.fee_reserve_sol < size_sol:
            venues = ordered_venues(self.cfg)
            venue_name = venues[0].name if venues else "paper"
            attempt_id = await self.db.start_tx_attempt(ENTRY, mint, venue_name, size_sol, position_id)
            await self.db.mark_tx_failed(attempt_id, "paper_insufficient_balance")
            raise InsufficientFundsError(
                f"paper_insufficient_balance: balance={balance:.6f} size={size_sol:.6f}"
            )

        async def attempt(venue: VenueConfig, attempt_id: int) -> SwapResult:
            quote, _ = await self.get_validated_quote(venue, self.wsol_mint, mint, lamports)
            out_raw = _int_amount(quote.get("outAmount"))
            decimals = await self.rpc.get_mint_decimals(mint)
            prev_raw, _ = await self.db.get_paper_balance(mint)
            await self.db.upsert_paper_balance(mint, prev_raw + out_raw, decimals)
            await self.db.record_paper_ledger("ENTRY_BUY", -size_sol, mint, f"venue={venue.name}")
            signature = f"paper:{uuid.uuid4().hex}"
            await self.db.mark_tx_submitted(attempt_id, signature)
            return SwapResult(
                signature=signature,
                venue=venue.name,
                simulated=True,
                in_amount=lamports,
                out_amount_raw=out_raw,
                spent_sol=size_sol,
                decimals=decimals,
            )

        result = await self._run_venues(ENTRY, mint, size_sol, position_id, attempt)
        logger.info("Paper entry filled", mint=mint, venue=result.venue, out_raw=result.out_amount_raw)
        return result

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def execute_exit(
        self, mint: str, sell_raw: int, owner: Optional[str] = None, position_id: Optional[str] = None
    ) -> SwapResult:
        sell_raw = int(sell_raw)
        if sell_raw <= 0:
            raise InsufficientFundsError(f"Nothing to sell for {mint}")

        if self.mode == "shadow":
            return await self._shadow(EXIT, mint, None, position_id, mint, self.wsol_mint, sell_raw)
        if self.mode == "paper":
            return await self._paper_exit(mint, sell_raw, position_id)

        if not owner:
            raise ExternalUnavailable("Owner public key required for live exits")

        async def attempt(venue: VenueConfig, attempt_id: int) -> _Sent:
            return await self._send_live(venue, attempt_id, mint, self.wsol_mint, sell_raw, owner)

        sent = await self._run_venues(EXIT, mint, None, position_id, attempt)
        quoted_out = _int_amount(sent.quote.get("outAmount"))
        result = SwapResult(
            signature=sent.signature,
            venue=sent.venue.name,
            simulated=False,
            in_amount=sell_raw,
            out_amount_raw=quoted_out,
            received_sol=quoted_out / LAMPORTS_PER_SOL,
            sold_raw=sell_raw,
        )
        await self._settle_exit(result, owner, mint)
        logger.info("Exit executed", mint=mint, venue=result.venue, signature=result.signature)
        return result

    async def _settle_exit(self, result: SwapResult, owner: str, mint: str) -> None:
        try:
            tx = await self.rpc.get_transaction(result.signature)
        except ExternalUnavailable as e:
            logger.warning("Exit settlement unreadable, using quote", signature=result.signature, error=repr(e))
            return
        if not tx:
            logger.warning("Exit transaction not found, using quote", signature=result.signature)
            return
        try:
            sol_delta = sol_delta_from_tx(tx, owner)
        except ValueError as e:
            logger.warning("Exit SOL delta unavailable", signature=result.signature, error=str(e))
        else:
            result.received_sol = sol_delta if sol_delta > 0 else 0.0
        token_delta, decimals = token_delta_from_tx(tx, owner, mint)
        result.sold_raw = -token_delta if token_delta < 0 else 0
        result.decimals = decimals

    async def _paper_exit(self, mint: str, sell_raw: int, position_id: Optional[str]) -> SwapResult:

        async def attempt(venue: VenueConfig, attempt_id: int) -> SwapResult:
            quote, _ = await self.get_validated_quote(venue, mint, self.wsol_mint, sell_raw)
            received_sol = _int_amount(quote.get("outAmount")) / LAMPORTS_PER_SOL
            held_raw, decimals = await self.db.get_paper_balance(mint)
            await self.db.upsert_paper_balance(mint, held_raw - sell_raw, decimals)
            await self.db.record_paper_ledger("EXIT_SELL", received_sol, mint, f"venue={venue.name}")
            signature = f"paper-exit:{uuid.uuid4().hex}"
            await self.db.mark_tx_submitted(attempt_id, signature)
            return SwapResult(
                signature=signature,
                venue=venue.name,
                simulated=True,
                in_amount=sell_raw,
                out_amount_raw=_int_amount(quote.get("outAmount")),
                received_sol=received_sol,
                sold_raw=sell_raw,
                decimals=decimals,
            )

        result = await self._run_venues(EXIT, mint, None, position_id, attempt)
        logger.info("Paper exit filled", mint=mint, venue=result.venue, received_sol=result.received_sol)
        return result
