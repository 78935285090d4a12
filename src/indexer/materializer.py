"""Materializer: applies parsed chain events to the StateStore.

Each event goes through two phases:

* ``prepare`` does the network-bound part (chain-context resolution of the
  creator or the traded mint) under a bounded timeout. It may run ahead of
  the apply phase for later events.
* ``apply`` performs the single atomic store mutation and publishes the
  derived updates. Callers run it serially in delivery order.

Per-event problems end in an ``Outcome``; only persistent store
unavailability escapes, as ``IngestionFatalError``.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from src.broadcast.broadcaster import Publisher
from src.broadcast.updates import (
    NEW_TOKENS_TOPIC,
    MigrationUpdate,
    NewTokenUpdate,
    PriceUpdate,
    TradeUpdate,
    token_topic,
)
from src.db.store import (
    CurveSnapshot,
    MigrationResult,
    NewToken,
    StateStore,
    TradeRecord,
)
from src.indexer.errors import (
    CurveMigrated,
    DuplicateEvent,
    IngestionFatalError,
    ReserveUnderflow,
    StateStoreConflict,
    StoreRejected,
    UnresolvedToken,
)
from src.indexer.metrics import IngestionMetrics
from src.parsers.openclaw.models import (
    ChainEvent,
    ConfigUpdated,
    GlobalConfig,
    Migrated,
    TokenCreated,
    TradeExecuted,
    TransactionContext,
)
from src.parsers.openclaw.pda import derive_bonding_curve_address
from src.pricing.engine import (
    InvalidInput,
    curve_progress_bps,
    market_cap_lamports,
    reserve_delta_for_trade,
    spot_price_lamports,
    trade_price,
)
from src.pricing.formatting import format_sol, format_tokens, price_sol_per_token
from src.utils.clock import from_unix, utcnow


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    REJECTED_MIGRATED = "rejected_migrated"
    UNDERFLOW = "underflow"
    UNKNOWN_TOKEN = "unknown_token"
    RECONFIGURED = "reconfigured"
    INVALID = "invalid"


class ContextResolver(Protocol):
    async def resolve_transaction(self, signature: str) -> TransactionContext | None: ...

    async def resolve_mint_of_token_account(self, account: str) -> str | None: ...


@dataclass
class PreparedEvent:
    event: ChainEvent
    context: TransactionContext | None = None
    mint: str | None = None
    # Set when prepare already decided the event's fate
    outcome: Outcome | None = None
    reason: str = ""

    @property
    def timestamp(self) -> datetime:
        return from_unix(self.context.block_time if self.context else None)


class Materializer:
    def __init__(
        self,
        store: StateStore,
        resolver: ContextResolver,
        publisher: Publisher,
        config: GlobalConfig,
        *,
        program_id: str,
        trade_token_account_index: int = 4,
        resolve_timeout: float = 30.0,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.5,
        metrics: IngestionMetrics | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._publisher = publisher
        self._config = config
        self._program_id = program_id
        self._trade_account_index = trade_token_account_index
        self._resolve_timeout = resolve_timeout
        self._retry_attempts = max(retry_attempts, 1)
        self._retry_base_delay = retry_base_delay
        self._metrics = metrics or IngestionMetrics()

    @property
    def config(self) -> GlobalConfig:
        return self._config

    @property
    def metrics(self) -> IngestionMetrics:
        return self._metrics

    async def process(self, event: ChainEvent) -> Outcome:
        return await self.apply(await self.prepare(event))

    # ── Phase 1: resolution ───────────────────────────────────────────────

    async def prepare(self, event: ChainEvent) -> PreparedEvent:
        prepared = PreparedEvent(event=event)
        if isinstance(event, (Migrated, ConfigUpdated)):
            return prepared

        # Replays are common after reconnects; skip the RPC round-trips for them
        if await self._already_applied(event):
            prepared.outcome = Outcome.DUPLICATE
            return prepared

        try:
            await asyncio.wait_for(self._resolve(prepared), timeout=self._resolve_timeout)
        except TimeoutError:
            prepared.outcome = Outcome.UNRESOLVED
            prepared.reason = "chain context resolution timed out"
        except UnresolvedToken as e:
            prepared.outcome = Outcome.UNRESOLVED
            prepared.reason = str(e)
        return prepared

    async def _already_applied(self, event: TokenCreated | TradeExecuted) -> bool:
        try:
            if isinstance(event, TokenCreated):
                return await self._store.token_exists(event.mint)
            return await self._store.trade_exists(event.signature)
        except StateStoreConflict:
            # The apply phase repeats the check inside its transaction
            return False

    async def _resolve(self, prepared: PreparedEvent) -> None:
        event = prepared.event
        context = await self._resolver.resolve_transaction(event.signature)
        if context is None:
            raise UnresolvedToken(f"transaction {event.signature[:16]} not available")
        prepared.context = context

        if isinstance(event, TokenCreated):
            prepared.mint = event.mint
            return

        keys = context.account_keys
        if len(keys) <= self._trade_account_index:
            raise UnresolvedToken(
                f"trade {event.signature[:16]} has {len(keys)} accounts, "
                f"no token account at index {self._trade_account_index}"
            )
        mint = await self._resolver.resolve_mint_of_token_account(keys[self._trade_account_index])
        if mint is None:
            raise UnresolvedToken(f"token account {keys[self._trade_account_index]} has no mint")
        prepared.mint = mint

    # ── Phase 2: atomic application ───────────────────────────────────────

    async def apply(self, prepared: PreparedEvent) -> Outcome:
        start = time.monotonic()
        if prepared.outcome is not None:
            outcome = prepared.outcome
            self._log_skipped(prepared)
        else:
            outcome = await self._apply_with_retry(prepared)
            self._metrics.record_apply_latency((time.monotonic() - start) * 1000)
        self._metrics.record_outcome(outcome.value)
        return outcome

    def _log_skipped(self, prepared: PreparedEvent) -> None:
        sig = prepared.event.signature[:16]
        if prepared.outcome is Outcome.DUPLICATE:
            logger.debug(f"[IDX] Duplicate {prepared.event.kind} {sig}")
        else:
            logger.warning(f"[IDX] Skipping {prepared.event.kind} {sig}: {prepared.reason}")

    async def _apply_with_retry(self, prepared: PreparedEvent) -> Outcome:
        attempt = 1
        while True:
            try:
                return await self._apply_once(prepared)
            except StoreRejected as e:
                logger.error(
                    f"[IDX] Store rejected {prepared.event.kind} {prepared.event.signature[:16]}: {e}"
                )
                return Outcome.INVALID
            except StateStoreConflict as e:
                if attempt >= self._retry_attempts:
                    logger.critical(
                        f"[IDX] Store unavailable after {attempt} attempts "
                        f"({prepared.event.kind} {prepared.event.signature[:16]}): {e}"
                    )
                    raise IngestionFatalError(str(e)) from e
                delay = self._retry_base_delay * 2 ** (attempt - 1)
                self._metrics.record_store_retry()
                logger.warning(
                    f"[IDX] Store conflict, retry {attempt}/{self._retry_attempts - 1} "
                    f"in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _apply_once(self, prepared: PreparedEvent) -> Outcome:
        event = prepared.event
        if isinstance(event, TokenCreated):
            return await self._apply_token_created(event, prepared)
        if isinstance(event, TradeExecuted):
            return await self._apply_trade(event, prepared)
        if isinstance(event, Migrated):
            return await self._apply_migrated(event)
        return self._apply_config_update(event)

    async def _apply_token_created(self, event: TokenCreated, prepared: PreparedEvent) -> Outcome:
        assert prepared.context is not None
        cfg = self._config
        token = NewToken(
            mint=event.mint,
            name=event.name,
            symbol=event.symbol,
            creator=prepared.context.fee_payer,
            bonding_curve=derive_bonding_curve_address(event.mint, self._program_id),
            creation_tx=event.signature,
            virtual_sol_reserves=cfg.initial_virtual_sol_reserves,
            virtual_token_reserves=cfg.initial_virtual_token_reserves,
            real_sol_reserves=0,
            # create_token mints the whole curve supply into the vault
            real_token_reserves=cfg.initial_virtual_token_reserves,
            market_cap_lamports=market_cap_lamports(
                cfg.initial_virtual_sol_reserves,
                cfg.initial_virtual_token_reserves,
                cfg.token_total_supply,
            ),
            created_at=prepared.timestamp,
        )
        if not await self._store.create_token(token):
            logger.debug(f"[IDX] Token {event.mint} already indexed")
            return Outcome.DUPLICATE

        logger.info(
            f"[IDX] New token {event.symbol} ({event.mint}) by {token.creator[:8]}, "
            f"mcap {format_sol(token.market_cap_lamports)} SOL"
        )
        self._publisher.publish(
            NEW_TOKENS_TOPIC,
            NewTokenUpdate(
                mint=token.mint,
                name=token.name,
                symbol=token.symbol,
                creator=token.creator,
                bonding_curve=token.bonding_curve,
                signature=event.signature,
                virtual_sol_reserves=token.virtual_sol_reserves,
                virtual_token_reserves=token.virtual_token_reserves,
                market_cap_lamports=token.market_cap_lamports,
                created_at=token.created_at,
            ),
        )
        return Outcome.APPLIED

    async def _apply_trade(self, event: TradeExecuted, prepared: PreparedEvent) -> Outcome:
        assert prepared.context is not None and prepared.mint is not None
        mint = prepared.mint
        sig = event.signature[:16]
        try:
            delta = reserve_delta_for_trade(
                event.direction, event.sol_amount, event.token_amount, event.fee_amount
            )
        except InvalidInput as e:
            logger.warning(f"[IDX] Rejecting trade {sig}: {e}")
            return Outcome.INVALID

        record = TradeRecord(
            signature=event.signature,
            trader=prepared.context.fee_payer,
            side=event.direction,
            sol_amount=event.sol_amount,
            token_amount=event.token_amount,
            fee_amount=event.fee_amount,
            price=trade_price(event.sol_amount, event.token_amount),
            timestamp=prepared.timestamp,
        )
        try:
            curve = await self._store.apply_trade(
                mint, record, delta, total_supply=self._config.token_total_supply
            )
        except DuplicateEvent:
            logger.debug(f"[IDX] Duplicate trade {sig}")
            return Outcome.DUPLICATE
        except UnresolvedToken as e:
            logger.warning(f"[IDX] Unresolved trade {sig}: {e}")
            return Outcome.UNRESOLVED
        except CurveMigrated:
            logger.warning(f"[IDX] Late trade {sig} on migrated curve {mint}, ignored")
            return Outcome.REJECTED_MIGRATED
        except ReserveUnderflow as e:
            logger.error(f"[IDX] Trade {sig} not applied: {e}")
            return Outcome.UNDERFLOW

        logger.info(
            f"[IDX] {event.direction.value} {mint[:8]} {format_sol(event.sol_amount)} SOL "
            f"for {format_tokens(event.token_amount)} tokens "
            f"@ {price_sol_per_token(record.price):.9f} SOL, sig={sig}"
        )
        topic = token_topic(mint)
        self._publisher.publish(
            topic,
            TradeUpdate(
                mint=mint,
                signature=record.signature,
                trader=record.trader,
                side=record.side,
                sol_amount=record.sol_amount,
                token_amount=record.token_amount,
                fee_amount=record.fee_amount,
                price=record.price,
                timestamp=record.timestamp,
            ),
        )
        self._publisher.publish(topic, self.price_update(curve, record.timestamp))
        return Outcome.APPLIED

    def price_update(self, curve: CurveSnapshot, timestamp: datetime) -> PriceUpdate:
        threshold = self._config.migration_threshold_lamports
        return PriceUpdate(
            mint=curve.mint,
            price_lamports=spot_price_lamports(
                curve.virtual_sol_reserves, curve.virtual_token_reserves
            ),
            market_cap_lamports=curve.market_cap_lamports,
            virtual_sol_reserves=curve.virtual_sol_reserves,
            virtual_token_reserves=curve.virtual_token_reserves,
            real_sol_reserves=curve.real_sol_reserves,
            real_token_reserves=curve.real_token_reserves,
            tokens_sold=curve.tokens_sold,
            progress_bps=curve_progress_bps(curve.real_sol_reserves, threshold),
            migration_ready=curve.real_sol_reserves >= threshold,
            timestamp=timestamp,
        )

    async def _apply_migrated(self, event: Migrated) -> Outcome:
        migrated_at = utcnow()
        result = await self._store.mark_migrated(event.mint, event.signature, migrated_at=migrated_at)
        if result is MigrationResult.UNKNOWN_TOKEN:
            logger.warning(f"[IDX] Migration for unknown mint {event.mint}, ignored")
            return Outcome.UNKNOWN_TOKEN
        if result is MigrationResult.ALREADY_MIGRATED:
            logger.debug(f"[IDX] {event.mint} already migrated")
            return Outcome.DUPLICATE

        logger.info(f"[IDX] Token {event.mint} migrated (tx {event.signature[:16]})")
        self._publisher.publish(
            token_topic(event.mint),
            MigrationUpdate(mint=event.mint, signature=event.signature, timestamp=migrated_at),
        )
        return Outcome.APPLIED

    def _apply_config_update(self, event: ConfigUpdated) -> Outcome:
        try:
            new_config = self._config.reconfigured(event)
        except ValidationError as e:
            logger.warning(f"[IDX] Ignoring invalid config update {event.signature[:16]}: {e}")
            return Outcome.INVALID
        logger.info(
            f"[IDX] GlobalConfig updated: fee {self._config.fee_bps} -> {new_config.fee_bps} bps, "
            f"threshold {self._config.migration_threshold_lamports} -> "
            f"{new_config.migration_threshold_lamports} lamports"
        )
        self._config = new_config
        return Outcome.RECONFIGURED
