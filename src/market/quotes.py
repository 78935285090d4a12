"""Quotes against the materialised curve state.

Uses the same engine the materializer's numbers come from, so a quote shown
to a user and the settlement the program performs cannot disagree.
"""

from collections.abc import Callable
from dataclasses import dataclass

from src.db.store import CurveSnapshot, StateStore
from src.indexer.errors import CurveMigrated, UnresolvedToken
from src.parsers.openclaw.models import GlobalConfig
from src.pricing.engine import (
    TradeDirection,
    price_impact_bps,
    quote_buy,
    quote_sell,
    spot_price,
)


@dataclass(frozen=True)
class CurveQuote:
    mint: str
    direction: TradeDirection
    amount_in: int
    amount_out: int
    fee: int
    price_impact_bps: int
    # Mirrors the program's InsufficientLiquidity check
    sufficient_liquidity: bool


class QuoteService:
    def __init__(self, store: StateStore, config_provider: Callable[[], GlobalConfig]) -> None:
        self._store = store
        self._config_provider = config_provider

    async def _tradable_curve(self, mint: str) -> CurveSnapshot:
        curve = await self._store.get_curve(mint)
        if curve is None:
            raise UnresolvedToken(f"no bonding curve for mint {mint}")
        if curve.migrated:
            raise CurveMigrated(mint)
        return curve

    async def quote_buy(self, mint: str, sol_in: int) -> CurveQuote:
        """Tokens received for ``sol_in`` lamports. Raises InvalidInput on bad amounts."""
        curve = await self._tradable_curve(mint)
        fee_bps = self._config_provider().fee_bps
        q = quote_buy(sol_in, curve.virtual_sol_reserves, curve.virtual_token_reserves, fee_bps)
        return CurveQuote(
            mint=mint,
            direction=TradeDirection.BUY,
            amount_in=sol_in,
            amount_out=q.tokens_out,
            fee=q.fee,
            price_impact_bps=price_impact_bps(
                spot_price(curve.virtual_sol_reserves, curve.virtual_token_reserves),
                spot_price(q.new_virtual_sol, q.new_virtual_token),
            ),
            sufficient_liquidity=q.tokens_out <= curve.real_token_reserves,
        )

    async def quote_sell(self, mint: str, token_in: int) -> CurveQuote:
        """Lamports received for ``token_in`` raw token units, net of fee."""
        curve = await self._tradable_curve(mint)
        fee_bps = self._config_provider().fee_bps
        q = quote_sell(token_in, curve.virtual_sol_reserves, curve.virtual_token_reserves, fee_bps)
        return CurveQuote(
            mint=mint,
            direction=TradeDirection.SELL,
            amount_in=token_in,
            amount_out=q.sol_out,
            fee=q.fee,
            price_impact_bps=price_impact_bps(
                spot_price(curve.virtual_sol_reserves, curve.virtual_token_reserves),
                spot_price(q.new_virtual_sol, q.new_virtual_token),
            ),
            sufficient_liquidity=q.sol_out <= curve.real_sol_reserves,
        )
