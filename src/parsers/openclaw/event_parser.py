"""Turn OpenClaw program log lines into typed events.

Stateless. Most lines in a transaction are irrelevant (compute units,
invoke/success lines, other programs) and simply yield nothing. A line that
carries one of our markers but does not parse raises ``ParseMismatch`` from
``parse_log_line``; ``parse_transaction`` records it and keeps going.
"""

from dataclasses import dataclass, field

from loguru import logger
from pydantic import ValidationError

from src.indexer.errors import ParseMismatch
from src.parsers.openclaw.constants import (
    BUY_RE,
    FEE_UPDATED_RE,
    MARKER_BUY,
    MARKER_FEE_UPDATED,
    MARKER_MIGRATED,
    MARKER_SELL,
    MARKER_THRESHOLD_UPDATED,
    MARKER_TOKEN_CREATED,
    MIGRATED_RE,
    SELL_RE,
    THRESHOLD_UPDATED_RE,
    TOKEN_CREATED_RE,
)
from src.parsers.openclaw.models import (
    ChainEvent,
    ConfigUpdated,
    LogBatch,
    Migrated,
    TokenCreated,
    TradeExecuted,
)
from src.parsers.openclaw.pda import is_valid_pubkey
from src.pricing.engine import TradeDirection

# Amounts are u64 on-chain but stored in signed BIGINT columns
MAX_AMOUNT = 2**63 - 1


@dataclass
class ParsedTransaction:
    signature: str
    events: list[ChainEvent] = field(default_factory=list)
    mismatches: list[ParseMismatch] = field(default_factory=list)


def _amount(line: str, raw: str) -> int:
    value = int(raw)
    if value > MAX_AMOUNT:
        raise ParseMismatch(line, f"value {raw} exceeds {MAX_AMOUNT}")
    return value


def _parse_token_created(line: str, signature: str) -> TokenCreated:
    match = TOKEN_CREATED_RE.search(line)
    if not match:
        raise ParseMismatch(line, "malformed token-created line")
    name, symbol, mint = match.group(1), match.group(2), match.group(3)
    if not is_valid_pubkey(mint):
        raise ParseMismatch(line, f"invalid mint {mint!r}")
    return TokenCreated(signature=signature, name=name.strip(), symbol=symbol.strip(), mint=mint)


def _parse_trade(line: str, signature: str, direction: TradeDirection) -> TradeExecuted:
    if direction is TradeDirection.BUY:
        match = BUY_RE.search(line)
        if not match:
            raise ParseMismatch(line, "malformed buy line")
        sol_raw, token_raw, fee_raw = match.groups()
    else:
        match = SELL_RE.search(line)
        if not match:
            raise ParseMismatch(line, "malformed sell line")
        token_raw, sol_raw, fee_raw = match.groups()

    try:
        return TradeExecuted(
            signature=signature,
            direction=direction,
            sol_amount=_amount(line, sol_raw),
            token_amount=_amount(line, token_raw),
            fee_amount=_amount(line, fee_raw),
        )
    except ValidationError as e:
        raise ParseMismatch(line, f"invalid trade amounts ({e.error_count()} errors)") from e


def _parse_migrated(line: str, signature: str) -> Migrated:
    match = MIGRATED_RE.search(line)
    if not match:
        raise ParseMismatch(line, "malformed migration line")
    mint = match.group(1)
    if not is_valid_pubkey(mint):
        raise ParseMismatch(line, f"invalid mint {mint!r}")
    return Migrated(signature=signature, mint=mint)


def _parse_config_update(line: str, signature: str) -> ConfigUpdated:
    match = FEE_UPDATED_RE.search(line)
    if match:
        return ConfigUpdated(signature=signature, fee_bps=_amount(line, match.group(1)))
    match = THRESHOLD_UPDATED_RE.search(line)
    if match:
        return ConfigUpdated(
            signature=signature, migration_threshold_lamports=_amount(line, match.group(1))
        )
    raise ParseMismatch(line, "malformed config update line")


def parse_log_line(line: str, signature: str) -> ChainEvent | None:
    """Parse one log line. Returns None for lines we don't care about."""
    if MARKER_TOKEN_CREATED in line:
        return _parse_token_created(line, signature)
    if MARKER_BUY in line:
        return _parse_trade(line, signature, TradeDirection.BUY)
    if MARKER_SELL in line:
        return _parse_trade(line, signature, TradeDirection.SELL)
    if "Token" in line and MARKER_MIGRATED in line:
        return _parse_migrated(line, signature)
    if MARKER_FEE_UPDATED in line or MARKER_THRESHOLD_UPDATED in line:
        return _parse_config_update(line, signature)
    return None


def parse_transaction(batch: LogBatch) -> ParsedTransaction:
    """Parse every line of a transaction in log order.

    Failed transactions never mutate state, so they yield no events whatever
    their logs say.
    """
    parsed = ParsedTransaction(signature=batch.signature)
    if not batch.success:
        return parsed

    for line in batch.logs:
        try:
            event = parse_log_line(line, batch.signature)
        except ParseMismatch as e:
            logger.warning(f"[OC] Parse mismatch in {batch.signature[:16]}: {e.reason}")
            parsed.mismatches.append(e)
            continue
        if event is not None:
            parsed.events.append(event)
    return parsed
