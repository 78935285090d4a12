"""Pydantic v2 models for OpenClaw log events and chain context."""

from typing import Literal

from pydantic import BaseModel, Field

from config.settings import Settings
from src.pricing.engine import BPS_DENOMINATOR, TradeDirection


class LogBatch(BaseModel):
    """One logsNotification: every log line of a single transaction."""

    signature: str
    success: bool
    logs: list[str] = Field(default_factory=list)
    slot: int | None = None

    model_config = {"extra": "ignore"}


class TokenCreated(BaseModel):
    kind: Literal["token_created"] = "token_created"
    signature: str
    name: str
    symbol: str
    mint: str


class TradeExecuted(BaseModel):
    kind: Literal["trade"] = "trade"
    signature: str
    direction: TradeDirection
    sol_amount: int = Field(gt=0)
    token_amount: int = Field(gt=0)
    fee_amount: int = Field(ge=0)


class Migrated(BaseModel):
    kind: Literal["migrated"] = "migrated"
    signature: str
    mint: str


class ConfigUpdated(BaseModel):
    """Admin ``update_config``. The only way GlobalConfig changes mid-run."""

    kind: Literal["config_updated"] = "config_updated"
    signature: str
    fee_bps: int | None = None
    migration_threshold_lamports: int | None = None


ChainEvent = TokenCreated | TradeExecuted | Migrated | ConfigUpdated


class TransactionContext(BaseModel):
    """Accounts of a confirmed transaction, resolved via getTransaction."""

    signature: str
    fee_payer: str
    account_keys: list[str]
    block_time: int | None = None

    model_config = {"extra": "ignore"}


class GlobalConfig(BaseModel):
    """Process-wide platform parameters. Frozen: replace, never mutate."""

    fee_bps: int = Field(ge=0, lt=BPS_DENOMINATOR)
    migration_threshold_lamports: int = Field(gt=0)
    initial_virtual_sol_reserves: int = Field(gt=0)
    initial_virtual_token_reserves: int = Field(gt=0)
    token_total_supply: int = Field(gt=0)

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, settings: Settings) -> "GlobalConfig":
        return cls(
            fee_bps=settings.fee_bps,
            migration_threshold_lamports=settings.migration_threshold_lamports,
            initial_virtual_sol_reserves=settings.initial_virtual_sol_reserves,
            initial_virtual_token_reserves=settings.initial_virtual_token_reserves,
            token_total_supply=settings.token_total_supply,
        )

    def reconfigured(self, event: ConfigUpdated) -> "GlobalConfig":
        """Return a validated copy with the event's changes applied."""
        data = self.model_dump()
        if event.fee_bps is not None:
            data["fee_bps"] = event.fee_bps
        if event.migration_threshold_lamports is not None:
            data["migration_threshold_lamports"] = event.migration_threshold_lamports
        return GlobalConfig.model_validate(data)
