"""Tests for the Materializer state machine against a real StateStore."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.broadcast.broadcaster import Broadcaster
from src.broadcast.updates import (
    NEW_TOKENS_TOPIC,
    MigrationUpdate,
    NewTokenUpdate,
    PriceUpdate,
    TradeUpdate,
    token_topic,
)
from src.db.store import CurveSnapshot
from src.indexer.errors import IngestionFatalError, StateStoreConflict, StoreRejected
from src.indexer.materializer import Materializer, Outcome
from src.parsers.openclaw.models import (
    ConfigUpdated,
    GlobalConfig,
    Migrated,
    TokenCreated,
    TradeExecuted,
    TransactionContext,
)
from src.parsers.openclaw.pda import derive_bonding_curve_address
from src.pricing.engine import TradeDirection, trade_price

V_SOL = 30_000_000_000
V_TOKEN = 1_000_000_000_000_000
PROGRAM_ID = str(Pubkey.new_unique())
FEE_PAYER = str(Pubkey.new_unique())


def _config(**overrides) -> GlobalConfig:
    values = {
        "fee_bps": 100,
        "migration_threshold_lamports": 85_000_000_000,
        "initial_virtual_sol_reserves": V_SOL,
        "initial_virtual_token_reserves": V_TOKEN,
        "token_total_supply": V_TOKEN,
    }
    values.update(overrides)
    return GlobalConfig(**values)


def _resolver(trade_mints: dict[str, str]) -> AsyncMock:
    """Resolver whose trade token account (index 4) is ``ata_<signature>``."""
    resolver = AsyncMock()

    async def resolve_transaction(signature: str) -> TransactionContext:
        return TransactionContext(
            signature=signature,
            fee_payer=FEE_PAYER,
            account_keys=[FEE_PAYER, "config", "curve", "vault", f"ata_{signature}"],
            block_time=1_700_000_000,
        )

    async def resolve_mint(account: str) -> str | None:
        return trade_mints.get(account.removeprefix("ata_"))

    resolver.resolve_transaction.side_effect = resolve_transaction
    resolver.resolve_mint_of_token_account.side_effect = resolve_mint
    return resolver


def _materializer(store, resolver, broadcaster=None, config=None, **kwargs) -> Materializer:
    return Materializer(
        store,
        resolver,
        broadcaster or Broadcaster(queue_size=64),
        config or _config(),
        program_id=PROGRAM_ID,
        retry_base_delay=0.0,
        **kwargs,
    )


def _created(mint: str, sig: str | None = None) -> TokenCreated:
    return TokenCreated(signature=sig or f"create_{mint[:8]}", name="Claw", symbol="CLAW", mint=mint)


def _buy(sig: str, sol: int = 1_000_000_000, tokens: int = 31_928_046, fee: int = 10_000_000) -> TradeExecuted:
    return TradeExecuted(
        signature=sig, direction=TradeDirection.BUY, sol_amount=sol, token_amount=tokens, fee_amount=fee
    )


def _sell(sig: str, tokens: int = 10_000_000, sol: int = 300_000_000, fee: int = 3_000_000) -> TradeExecuted:
    return TradeExecuted(
        signature=sig, direction=TradeDirection.SELL, sol_amount=sol, token_amount=tokens, fee_amount=fee
    )


def _reserves(curve: CurveSnapshot) -> tuple:
    return (
        curve.virtual_sol_reserves,
        curve.virtual_token_reserves,
        curve.real_sol_reserves,
        curve.real_token_reserves,
        curve.tokens_sold,
        curve.market_cap_lamports,
        curve.migrated,
    )


class TestTokenCreated:
    @pytest.mark.asyncio
    async def test_creates_curve_and_announces_it(self, store):
        mint = str(Pubkey.new_unique())
        broadcaster = Broadcaster()
        sub = broadcaster.subscribe(NEW_TOKENS_TOPIC)
        m = _materializer(store, _resolver({}), broadcaster)

        assert await m.process(_created(mint)) is Outcome.APPLIED

        curve = await store.get_curve(mint)
        assert curve.creator == FEE_PAYER
        assert curve.bonding_curve == derive_bonding_curve_address(mint, PROGRAM_ID)
        assert curve.virtual_sol_reserves == V_SOL
        assert curve.virtual_token_reserves == V_TOKEN
        assert curve.real_sol_reserves == 0
        assert curve.real_token_reserves == V_TOKEN
        assert curve.created_at == datetime(2023, 11, 14, 22, 13, 20)
        assert (await store.get_stats()).total_tokens == 1

        update = sub.get_nowait()
        assert isinstance(update, NewTokenUpdate)
        assert update.mint == mint
        assert update.creator == FEE_PAYER
        assert update.market_cap_lamports == V_SOL

    @pytest.mark.asyncio
    async def test_replay_is_noop_without_rpc(self, store):
        mint = str(Pubkey.new_unique())
        resolver = _resolver({})
        m = _materializer(store, resolver)

        assert await m.process(_created(mint)) is Outcome.APPLIED
        assert await m.process(_created(mint)) is Outcome.DUPLICATE
        assert resolver.resolve_transaction.await_count == 1
        assert (await store.get_stats()).total_tokens == 1

    @pytest.mark.asyncio
    async def test_unresolvable_fee_payer_skips(self, store):
        mint = str(Pubkey.new_unique())
        resolver = AsyncMock()
        resolver.resolve_transaction.return_value = None
        m = _materializer(store, resolver)

        assert await m.process(_created(mint)) is Outcome.UNRESOLVED
        assert not await store.token_exists(mint)


class TestTrades:
    @pytest.mark.asyncio
    async def test_buy_applies_and_publishes(self, store):
        mint = str(Pubkey.new_unique())
        broadcaster = Broadcaster()
        sub = broadcaster.subscribe(token_topic(mint))
        m = _materializer(store, _resolver({"buy_1": mint}), broadcaster)
        await m.process(_created(mint))

        assert await m.process(_buy("buy_1")) is Outcome.APPLIED

        curve = await store.get_curve(mint)
        assert curve.virtual_sol_reserves == V_SOL + 990_000_000
        assert curve.virtual_token_reserves == V_TOKEN - 31_928_046
        assert curve.real_sol_reserves == 990_000_000
        assert curve.tokens_sold == 31_928_046

        trade_update, price_update = sub.drain()
        assert isinstance(trade_update, TradeUpdate)
        assert trade_update.trader == FEE_PAYER
        assert trade_update.price == trade_price(1_000_000_000, 31_928_046)
        assert isinstance(price_update, PriceUpdate)
        assert price_update.virtual_sol_reserves == curve.virtual_sol_reserves
        assert price_update.market_cap_lamports == curve.market_cap_lamports
        assert price_update.migration_ready is False
        assert price_update.progress_bps == 990_000_000 * 10_000 // 85_000_000_000

    @pytest.mark.asyncio
    async def test_same_event_twice_applies_once(self, store):
        mint = str(Pubkey.new_unique())
        m = _materializer(store, _resolver({"sig_x": mint}))
        await m.process(_created(mint))

        assert await m.process(_buy("sig_x")) is Outcome.APPLIED
        once = _reserves(await store.get_curve(mint))
        stats_once = await store.get_stats()

        assert await m.process(_buy("sig_x")) is Outcome.DUPLICATE
        assert _reserves(await store.get_curve(mint)) == once
        assert await store.get_stats() == stats_once

    @pytest.mark.asyncio
    async def test_duplicates_prepared_concurrently_apply_once(self, store):
        mint = str(Pubkey.new_unique())
        m = _materializer(store, _resolver({"sig_dup": mint}))
        await m.process(_created(mint))

        # Both pass the pre-check because neither has been applied yet
        first = await m.prepare(_buy("sig_dup"))
        second = await m.prepare(_buy("sig_dup"))
        assert second.outcome is None
        assert await m.apply(first) is Outcome.APPLIED
        assert await m.apply(second) is Outcome.DUPLICATE

        stats = await store.get_stats()
        assert stats.total_trades == 1
        assert len(await store.recent_trades(mint)) == 1
        assert (await store.get_curve(mint)).real_sol_reserves == 990_000_000

    @pytest.mark.asyncio
    async def test_order_independent_across_tokens(self, store):
        a, b, c, d = (str(Pubkey.new_unique()) for _ in range(4))
        resolver = _resolver({"a1": a, "b1": b, "c1": c, "d1": d, "a2": a, "c2": c})
        m = _materializer(store, resolver)
        for mint in (a, b, c, d):
            await m.process(_created(mint))

        # (a, b) see one interleaving, (c, d) the mirrored one with identical amounts
        for event in (_buy("a1"), _buy("b1", sol=2_000_000_000, tokens=60_000_000), _sell("a2")):
            await m.process(event)
        for event in (_buy("d1", sol=2_000_000_000, tokens=60_000_000), _buy("c1"), _sell("c2")):
            await m.process(event)

        assert _reserves(await store.get_curve(a)) == _reserves(await store.get_curve(c))
        assert _reserves(await store.get_curve(b)) == _reserves(await store.get_curve(d))

    @pytest.mark.asyncio
    async def test_trade_for_unknown_curve_is_unresolved(self, store):
        stranger = str(Pubkey.new_unique())
        m = _materializer(store, _resolver({"sig_u": stranger}))

        assert await m.process(_buy("sig_u")) is Outcome.UNRESOLVED
        assert not await store.trade_exists("sig_u")

    @pytest.mark.asyncio
    async def test_token_account_without_mint_is_unresolved(self, store):
        m = _materializer(store, _resolver({}))
        assert await m.process(_buy("sig_nomint")) is Outcome.UNRESOLVED

    @pytest.mark.asyncio
    async def test_short_account_list_is_unresolved(self, store):
        resolver = AsyncMock()
        resolver.resolve_transaction.return_value = TransactionContext(
            signature="sig_short", fee_payer=FEE_PAYER, account_keys=[FEE_PAYER, "x"]
        )
        m = _materializer(store, resolver)
        assert await m.process(_buy("sig_short")) is Outcome.UNRESOLVED
        resolver.resolve_mint_of_token_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolution_timeout_is_unresolved(self, store):
        resolver = AsyncMock()

        async def hang(signature: str) -> None:
            await asyncio.sleep(10)

        resolver.resolve_transaction.side_effect = hang
        m = _materializer(store, resolver, resolve_timeout=0.05)
        assert await m.process(_buy("sig_slow")) is Outcome.UNRESOLVED
        assert m.metrics.outcome_count("unresolved") == 1

    @pytest.mark.asyncio
    async def test_oversell_is_not_applied(self, store):
        mint = str(Pubkey.new_unique())
        m = _materializer(store, _resolver({"sig_over": mint}))
        await m.process(_created(mint))

        outcome = await m.process(_sell("sig_over", tokens=1_000, sol=5_000_000_000, fee=0))
        assert outcome is Outcome.UNDERFLOW
        assert (await store.get_curve(mint)).real_sol_reserves == 0

    @pytest.mark.asyncio
    async def test_migration_ready_flag(self, store):
        mint = str(Pubkey.new_unique())
        broadcaster = Broadcaster()
        sub = broadcaster.subscribe(token_topic(mint))
        m = _materializer(
            store,
            _resolver({"sig_big": mint}),
            broadcaster,
            config=_config(migration_threshold_lamports=500_000_000),
        )
        await m.process(_created(mint))
        await m.process(_buy("sig_big"))

        price = sub.drain()[-1]
        assert isinstance(price, PriceUpdate)
        assert price.migration_ready is True
        assert price.progress_bps == 10_000


class TestMigration:
    @pytest.mark.asyncio
    async def test_trades_after_migration_leave_reserves_unchanged(self, store):
        mint = str(Pubkey.new_unique())
        broadcaster = Broadcaster()
        sub = broadcaster.subscribe(token_topic(mint))
        m = _materializer(store, _resolver({"pre": mint, "late": mint}), broadcaster)
        await m.process(_created(mint))
        await m.process(_buy("pre"))

        assert await m.process(Migrated(signature="mig", mint=mint)) is Outcome.APPLIED
        frozen = _reserves(await store.get_curve(mint))

        assert await m.process(_buy("late")) is Outcome.REJECTED_MIGRATED
        assert await m.process(_sell("late")) is Outcome.REJECTED_MIGRATED
        assert _reserves(await store.get_curve(mint)) == frozen
        assert not await store.trade_exists("late")

        updates = sub.drain()
        assert isinstance(updates[-1], MigrationUpdate)
        assert updates[-1].signature == "mig"

    @pytest.mark.asyncio
    async def test_unknown_mint_is_noop(self, store):
        m = _materializer(store, _resolver({}))
        outcome = await m.process(Migrated(signature="mig", mint=str(Pubkey.new_unique())))
        assert outcome is Outcome.UNKNOWN_TOKEN
        assert (await store.get_stats()).total_migrated == 0

    @pytest.mark.asyncio
    async def test_second_migration_is_noop(self, store):
        mint = str(Pubkey.new_unique())
        broadcaster = Broadcaster()
        sub = broadcaster.subscribe(token_topic(mint))
        m = _materializer(store, _resolver({}), broadcaster)
        await m.process(_created(mint))

        assert await m.process(Migrated(signature="mig1", mint=mint)) is Outcome.APPLIED
        assert await m.process(Migrated(signature="mig2", mint=mint)) is Outcome.DUPLICATE

        assert (await store.get_curve(mint)).migration_tx == "mig1"
        assert (await store.get_stats()).total_migrated == 1
        assert len(sub.drain()) == 1


class TestConfigUpdates:
    @pytest.mark.asyncio
    async def test_replaces_config(self, store):
        m = _materializer(store, _resolver({}))
        before = m.config

        outcome = await m.process(ConfigUpdated(signature="cfg", fee_bps=250))
        assert outcome is Outcome.RECONFIGURED
        assert m.config.fee_bps == 250
        assert m.config.migration_threshold_lamports == before.migration_threshold_lamports
        assert before.fee_bps == 100

    @pytest.mark.asyncio
    async def test_invalid_fee_rejected(self, store):
        m = _materializer(store, _resolver({}))
        assert await m.process(ConfigUpdated(signature="cfg", fee_bps=10_000)) is Outcome.INVALID
        assert m.config.fee_bps == 100


class TestStoreFailures:
    def _snapshot(self, mint: str) -> CurveSnapshot:
        return CurveSnapshot(
            mint=mint,
            name="Claw",
            symbol="CLAW",
            creator=FEE_PAYER,
            bonding_curve="curve",
            virtual_sol_reserves=V_SOL,
            virtual_token_reserves=V_TOKEN,
            real_sol_reserves=0,
            real_token_reserves=V_TOKEN,
            tokens_sold=0,
            market_cap_lamports=V_SOL,
            migrated=False,
            migration_tx=None,
            created_at=datetime(2026, 1, 1),
        )

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self):
        mint = str(Pubkey.new_unique())
        store = AsyncMock()
        store.trade_exists.return_value = False
        store.apply_trade.side_effect = [StateStoreConflict("deadlock"), self._snapshot(mint)]
        m = _materializer(store, _resolver({"sig_r": mint}), retry_attempts=3)

        assert await m.process(_buy("sig_r")) is Outcome.APPLIED
        assert store.apply_trade.await_count == 2
        assert m.metrics.get_summary()["store_retries"] == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_is_fatal(self):
        mint = str(Pubkey.new_unique())
        store = AsyncMock()
        store.trade_exists.return_value = False
        store.apply_trade.side_effect = StateStoreConflict("db down")
        m = _materializer(store, _resolver({"sig_f": mint}), retry_attempts=3)

        with pytest.raises(IngestionFatalError):
            await m.process(_buy("sig_f"))
        assert store.apply_trade.await_count == 3

    @pytest.mark.asyncio
    async def test_precheck_failure_falls_through_to_apply(self):
        mint = str(Pubkey.new_unique())
        store = AsyncMock()
        store.trade_exists.side_effect = StateStoreConflict("flaky")
        store.apply_trade.return_value = self._snapshot(mint)
        m = _materializer(store, _resolver({"sig_p": mint}))

        assert await m.process(_buy("sig_p")) is Outcome.APPLIED


@pytest.mark.asyncio
async def test_slow_subscriber_never_blocks(store):
    mint = str(Pubkey.new_unique())
    broadcaster = Broadcaster(queue_size=1)
    sub = broadcaster.subscribe(token_topic(mint))
    trades = {f"t{i}": mint for i in range(5)}
    m = _materializer(store, _resolver(trades), broadcaster)
    await m.process(_created(mint))

    for sig in trades:
        assert await asyncio.wait_for(m.process(_buy(sig, sol=100_000_000, tokens=1_000_000, fee=1_000_000)), 5)

    assert sub.pending == 1
    assert sub.dropped == 9


@pytest.mark.asyncio
async def test_rejected_data_skips_event_without_retry():
    mint = str(Pubkey.new_unique())
    store = AsyncMock()
    store.trade_exists.return_value = False
    store.apply_trade.side_effect = StoreRejected("value out of int64 range")
    m = _materializer(store, _resolver({"sig_x": mint}), retry_attempts=3)

    assert await m.process(_buy("sig_x")) is Outcome.INVALID
    assert store.apply_trade.await_count == 1
    assert m.metrics.get_summary()["store_retries"] == 0


@pytest.mark.asyncio
async def test_trade_log_uses_display_units(store):
    mint = str(Pubkey.new_unique())
    m = _materializer(store, _resolver({"sig_log": mint}))
    await m.process(_created(mint))

    lines: list[str] = []
    sink_id = logger.add(lines.append, level="INFO", format="{message}")
    try:
        await m.process(_buy("sig_log"))
    finally:
        logger.remove(sink_id)

    trade_line = next(line for line in lines if "sig=sig_log" in line)
    assert "1.00 SOL" in trade_line
    assert "31.93 tokens" in trade_line
