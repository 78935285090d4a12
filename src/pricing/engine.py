"""Constant-product bonding curve arithmetic.

Mirrors the OpenClaw program's integer math exactly (u64 inputs, u128
intermediates, truncating division). No floating point anywhere: callers
that need a human-readable number go through ``src.pricing.formatting``.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, localcontext
from enum import Enum
from fractions import Fraction

BPS_DENOMINATOR = 10_000
TOKEN_DECIMALS = 6
LAMPORTS_PER_SOL = 1_000_000_000

# Trade prices are stored with this many decimal places (lamports per raw token unit)
PRICE_PLACES = Decimal("1e-18")


class InvalidInput(ValueError):
    """Engine called with a non-positive amount/reserve or an out-of-range fee."""


class TradeDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class BuyQuote:
    tokens_out: int
    fee: int
    sol_after_fee: int
    new_virtual_sol: int
    new_virtual_token: int


@dataclass(frozen=True)
class SellQuote:
    sol_out: int
    fee: int
    gross_sol_out: int
    new_virtual_sol: int
    new_virtual_token: int


@dataclass(frozen=True)
class ReserveDelta:
    """Signed change to a curve's reserves produced by one trade."""

    virtual_sol: int
    virtual_token: int
    real_sol: int
    real_token: int
    tokens_sold: int
    volume: int


def _require_int(name: str, value: object) -> int:
    # bool is an int subclass; floats are rejected outright
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {type(value).__name__}")
    return value


def _require_positive(name: str, value: object) -> int:
    value = _require_int(name, value)
    if value <= 0:
        raise InvalidInput(f"{name} must be positive, got {value}")
    return value


def _require_fee_bps(fee_bps: object) -> int:
    fee_bps = _require_int("fee_bps", fee_bps)
    if not 0 <= fee_bps < BPS_DENOMINATOR:
        raise InvalidInput(f"fee_bps must be in [0, {BPS_DENOMINATOR}), got {fee_bps}")
    return fee_bps


def apply_fee(amount: int, fee_bps: int) -> int:
    """Fee charged on ``amount``: floor(amount * fee_bps / 10000)."""
    return amount * fee_bps // BPS_DENOMINATOR


def quote_buy(sol_in: int, virtual_sol: int, virtual_token: int, fee_bps: int) -> BuyQuote:
    """Tokens received for ``sol_in`` lamports, fee taken from the input side."""
    sol_in = _require_positive("sol_in", sol_in)
    virtual_sol = _require_positive("virtual_sol", virtual_sol)
    virtual_token = _require_positive("virtual_token", virtual_token)
    fee_bps = _require_fee_bps(fee_bps)

    fee = apply_fee(sol_in, fee_bps)
    sol_after_fee = sol_in - fee
    k = virtual_sol * virtual_token
    new_sol = virtual_sol + sol_after_fee
    new_token = k // new_sol
    return BuyQuote(
        tokens_out=virtual_token - new_token,
        fee=fee,
        sol_after_fee=sol_after_fee,
        new_virtual_sol=new_sol,
        new_virtual_token=new_token,
    )


def quote_sell(token_in: int, virtual_sol: int, virtual_token: int, fee_bps: int) -> SellQuote:
    """Lamports received for ``token_in`` raw tokens, fee taken from the output side."""
    token_in = _require_positive("token_in", token_in)
    virtual_sol = _require_positive("virtual_sol", virtual_sol)
    virtual_token = _require_positive("virtual_token", virtual_token)
    fee_bps = _require_fee_bps(fee_bps)

    k = virtual_sol * virtual_token
    new_token = virtual_token + token_in
    new_sol = k // new_token
    gross = virtual_sol - new_sol
    fee = apply_fee(gross, fee_bps)
    return SellQuote(
        sol_out=gross - fee,
        fee=fee,
        gross_sol_out=gross,
        new_virtual_sol=new_sol,
        new_virtual_token=new_token,
    )


def _round_half_away(value: Fraction) -> int:
    magnitude = (abs(value.numerator) * 2 + value.denominator) // (2 * value.denominator)
    return magnitude if value >= 0 else -magnitude


def price_impact_bps(before: int | Fraction, after: int | Fraction) -> int:
    """Relative price change in basis points, sign preserved.

    Prices are exact rationals (see ``spot_price``). Halves round away from zero.
    """
    if isinstance(before, float) or isinstance(after, float):
        raise InvalidInput("prices must be exact (int or Fraction), not float")
    before = Fraction(before)
    after = Fraction(after)
    if before <= 0:
        raise InvalidInput(f"price before must be positive, got {before}")
    return _round_half_away((after - before) / before * BPS_DENOMINATOR)


def spot_price(virtual_sol: int, virtual_token: int) -> Fraction:
    """Exact marginal price in lamports per raw token unit."""
    virtual_sol = _require_positive("virtual_sol", virtual_sol)
    virtual_token = _require_positive("virtual_token", virtual_token)
    return Fraction(virtual_sol, virtual_token)


def buy_price_impact_bps(sol_in: int, virtual_sol: int, virtual_token: int, fee_bps: int) -> int:
    quote = quote_buy(sol_in, virtual_sol, virtual_token, fee_bps)
    return price_impact_bps(
        spot_price(virtual_sol, virtual_token),
        spot_price(quote.new_virtual_sol, quote.new_virtual_token),
    )


def sell_price_impact_bps(token_in: int, virtual_sol: int, virtual_token: int, fee_bps: int) -> int:
    quote = quote_sell(token_in, virtual_sol, virtual_token, fee_bps)
    return price_impact_bps(
        spot_price(virtual_sol, virtual_token),
        spot_price(quote.new_virtual_sol, quote.new_virtual_token),
    )


def spot_price_lamports(virtual_sol: int, virtual_token: int) -> int:
    """On-chain ``BondingCurve::get_price``: lamports per whole token, truncated."""
    if virtual_token <= 0:
        return 0
    return virtual_sol * 10**TOKEN_DECIMALS // virtual_token


def market_cap_lamports(virtual_sol: int, virtual_token: int, total_supply: int) -> int:
    if virtual_token <= 0:
        return 0
    return virtual_sol * total_supply // virtual_token


def trade_price(sol_amount: int, token_amount: int) -> Decimal:
    """Executed price as logged: lamports per raw token unit, truncated to 18 places."""
    sol_amount = _require_positive("sol_amount", sol_amount)
    token_amount = _require_positive("token_amount", token_amount)
    with localcontext() as ctx:
        ctx.prec = 60
        return (Decimal(sol_amount) / Decimal(token_amount)).quantize(
            PRICE_PLACES, rounding=ROUND_DOWN
        )


def curve_progress_bps(real_sol_reserves: int, migration_threshold: int) -> int:
    """Progress towards migration, capped at 100%."""
    if migration_threshold <= 0:
        return BPS_DENOMINATOR
    return min(max(real_sol_reserves, 0) * BPS_DENOMINATOR // migration_threshold, BPS_DENOMINATOR)


def reserve_delta_for_trade(
    direction: TradeDirection, sol_amount: int, token_amount: int, fee_amount: int
) -> ReserveDelta:
    """Reserve movement for a trade as reported by the program's Buy/Sell log.

    Buy logs report the gross SOL paid; the curve keeps ``sol - fee``.
    Sell logs report the net SOL paid out; the curve gives up ``sol + fee``.
    """
    sol_amount = _require_positive("sol_amount", sol_amount)
    token_amount = _require_positive("token_amount", token_amount)
    fee_amount = _require_int("fee_amount", fee_amount)
    if fee_amount < 0:
        raise InvalidInput(f"fee_amount must be non-negative, got {fee_amount}")

    if direction is TradeDirection.BUY:
        if fee_amount > sol_amount:
            raise InvalidInput("buy fee exceeds SOL paid")
        sol_in = sol_amount - fee_amount
        return ReserveDelta(
            virtual_sol=sol_in,
            virtual_token=-token_amount,
            real_sol=sol_in,
            real_token=-token_amount,
            tokens_sold=token_amount,
            volume=sol_amount,
        )

    sol_out = sol_amount + fee_amount
    return ReserveDelta(
        virtual_sol=-sol_out,
        virtual_token=token_amount,
        real_sol=-sol_out,
        real_token=token_amount,
        tokens_sold=-token_amount,
        volume=sol_out,
    )
