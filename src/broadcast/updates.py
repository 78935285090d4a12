"""Derived update payloads pushed to subscribers, and their topic names."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from src.pricing.engine import TradeDirection

NEW_TOKENS_TOPIC = "newTokens"


def token_topic(mint: str) -> str:
    """Per-token channel carrying trade, price and migration updates."""
    return f"token:{mint}"


class NewTokenUpdate(BaseModel):
    type: Literal["new_token"] = "new_token"
    mint: str
    name: str
    symbol: str
    creator: str
    bonding_curve: str
    signature: str
    virtual_sol_reserves: int
    virtual_token_reserves: int
    market_cap_lamports: int
    created_at: datetime


class TradeUpdate(BaseModel):
    type: Literal["trade"] = "trade"
    mint: str
    signature: str
    trader: str
    side: TradeDirection
    sol_amount: int
    token_amount: int
    fee_amount: int
    # Lamports per raw token unit as executed
    price: Decimal
    timestamp: datetime


class PriceUpdate(BaseModel):
    type: Literal["price"] = "price"
    mint: str
    # Lamports per whole token, as the program's get_price reports it
    price_lamports: int
    market_cap_lamports: int
    virtual_sol_reserves: int
    virtual_token_reserves: int
    real_sol_reserves: int
    real_token_reserves: int
    tokens_sold: int
    progress_bps: int
    migration_ready: bool
    timestamp: datetime


class MigrationUpdate(BaseModel):
    type: Literal["migration"] = "migration"
    mint: str
    signature: str
    timestamp: datetime


Update = NewTokenUpdate | TradeUpdate | PriceUpdate | MigrationUpdate
