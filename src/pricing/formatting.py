"""Human-readable SOL / token amounts for log lines."""

from decimal import Decimal
from fractions import Fraction

from src.pricing.engine import LAMPORTS_PER_SOL, TOKEN_DECIMALS


def _two(value: Decimal) -> str:
    return f"{value:.2f}"


def format_sol(lamports: int) -> str:
    sol = Decimal(lamports) / LAMPORTS_PER_SOL
    if sol < Decimal("0.001"):
        return f"{sol:.6f}"
    if sol < 1:
        return f"{sol:.4f}"
    if sol >= 1_000_000:
        return _two(sol / 1_000_000) + "M"
    if sol >= 1_000:
        return _two(sol / 1_000) + "K"
    return _two(sol)


def format_tokens(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    tokens = Decimal(amount) / (Decimal(10) ** decimals)
    if tokens >= 1_000_000_000:
        return _two(tokens / 1_000_000_000) + "B"
    if tokens >= 1_000_000:
        return _two(tokens / 1_000_000) + "M"
    if tokens >= 1_000:
        return _two(tokens / 1_000) + "K"
    return _two(tokens)


def price_sol_per_token(price: Fraction | Decimal, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Convert lamports-per-raw-unit into SOL per whole token (display only)."""
    if isinstance(price, Fraction):
        price = Decimal(price.numerator) / Decimal(price.denominator)
    return price * (Decimal(10) ** decimals) / LAMPORTS_PER_SOL
