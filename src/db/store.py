"""StateStore: the authoritative record of curves, trades and platform stats.

Every mutation runs in one database transaction covering its idempotency
check, row insert/update and counter increments, so a concurrent reader
never sees a trade without its reserve effect or the reverse. Transient
database failures surface as ``StateStoreConflict``; the caller decides
whether to retry. Values the columns cannot hold surface as ``StoreRejected``.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    InternalError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.indexer.errors import (
    CurveMigrated,
    DuplicateEvent,
    ReserveUnderflow,
    StateStoreConflict,
    StoreRejected,
    UnresolvedToken,
)
from src.models.stats import STATS_ROW_ID, PlatformStats
from src.models.token import Token
from src.models.trade import Trade
from src.pricing.engine import ReserveDelta, TradeDirection, market_cap_lamports
from src.utils.clock import utcnow


@dataclass(frozen=True)
class CurveSnapshot:
    mint: str
    name: str
    symbol: str
    creator: str
    bonding_curve: str
    virtual_sol_reserves: int
    virtual_token_reserves: int
    real_sol_reserves: int
    real_token_reserves: int
    tokens_sold: int
    market_cap_lamports: int
    migrated: bool
    migration_tx: str | None
    created_at: datetime


@dataclass(frozen=True)
class NewToken:
    mint: str
    name: str
    symbol: str
    creator: str
    bonding_curve: str
    creation_tx: str
    virtual_sol_reserves: int
    virtual_token_reserves: int
    real_sol_reserves: int
    real_token_reserves: int
    market_cap_lamports: int
    created_at: datetime


@dataclass(frozen=True)
class TradeRecord:
    signature: str
    trader: str
    side: TradeDirection
    sol_amount: int
    token_amount: int
    fee_amount: int
    price: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class StatsDelta:
    volume: int = 0
    trades: int = 0
    tokens: int = 0
    migrated: int = 0


@dataclass(frozen=True)
class StatsSnapshot:
    total_volume: int = 0
    total_trades: int = 0
    total_tokens: int = 0
    total_migrated: int = 0


class MigrationResult(Enum):
    APPLIED = "applied"
    ALREADY_MIGRATED = "already_migrated"
    UNKNOWN_TOKEN = "unknown_token"


class StateStore(Protocol):
    async def token_exists(self, mint: str) -> bool: ...

    async def get_curve(self, mint: str) -> CurveSnapshot | None: ...

    async def create_token(self, token: NewToken) -> bool: ...

    async def trade_exists(self, signature: str) -> bool: ...

    async def apply_trade(
        self, mint: str, trade: TradeRecord, delta: ReserveDelta, *, total_supply: int
    ) -> CurveSnapshot: ...

    async def mark_migrated(
        self, mint: str, tx: str, *, migrated_at: datetime | None = None
    ) -> MigrationResult: ...

    async def increment_stats(self, delta: StatsDelta) -> None: ...

    async def get_stats(self) -> StatsSnapshot: ...

    async def trades_between(
        self, mint: str, start: datetime, end: datetime
    ) -> list[TradeRecord]: ...


def _snapshot(token: Token) -> CurveSnapshot:
    return CurveSnapshot(
        mint=token.mint,
        name=token.name,
        symbol=token.symbol,
        creator=token.creator,
        bonding_curve=token.bonding_curve,
        virtual_sol_reserves=token.virtual_sol_reserves,
        virtual_token_reserves=token.virtual_token_reserves,
        real_sol_reserves=token.real_sol_reserves,
        real_token_reserves=token.real_token_reserves,
        tokens_sold=token.tokens_sold,
        market_cap_lamports=token.market_cap_lamports,
        migrated=token.migrated,
        migration_tx=token.migration_tx,
        created_at=token.created_at,
    )


def _trade_record(row: Trade) -> TradeRecord:
    return TradeRecord(
        signature=row.signature,
        trader=row.trader,
        side=TradeDirection(row.side),
        sol_amount=row.sol_amount,
        token_amount=row.token_amount,
        fee_amount=row.fee_amount,
        price=Decimal(row.price),
        timestamp=row.timestamp,
    )


class SqlStateStore:
    """StateStore on SQLAlchemy async sessions (PostgreSQL in production)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except IntegrityError as e:
            raise DuplicateEvent(str(e.orig)) from e
        except DataError as e:
            logger.error(f"[STORE] Data rejected: {e.orig}")
            raise StoreRejected(str(e.orig)) from e
        except (OperationalError, InterfaceError, InternalError, PoolTimeoutError, OSError) as e:
            logger.warning(f"[STORE] Transaction failed: {e}")
            raise StateStoreConflict(str(e)) from e
        except DBAPIError as e:
            if not e.connection_invalidated:
                raise
            logger.warning(f"[STORE] Connection lost: {e}")
            raise StateStoreConflict(str(e)) from e

    async def _lock_token(self, session: AsyncSession, mint: str) -> Token | None:
        stmt = select(Token).where(Token.mint == mint).with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _bump_stats(self, session: AsyncSession, delta: StatsDelta) -> None:
        stats = await session.get(PlatformStats, STATS_ROW_ID, with_for_update=True)
        if stats is None:
            stats = PlatformStats(
                id=STATS_ROW_ID,
                total_volume=0,
                total_trades=0,
                total_tokens=0,
                total_migrated=0,
            )
            session.add(stats)
        stats.total_volume += delta.volume
        stats.total_trades += delta.trades
        stats.total_tokens += delta.tokens
        stats.total_migrated += delta.migrated

    # ── Reads ─────────────────────────────────────────────────────────────

    async def token_exists(self, mint: str) -> bool:
        async with self._transaction() as session:
            stmt = select(Token.id).where(Token.mint == mint)
            return (await session.execute(stmt)).first() is not None

    async def get_curve(self, mint: str) -> CurveSnapshot | None:
        async with self._transaction() as session:
            stmt = select(Token).where(Token.mint == mint)
            token = (await session.execute(stmt)).scalar_one_or_none()
            return _snapshot(token) if token else None

    async def trade_exists(self, signature: str) -> bool:
        async with self._transaction() as session:
            stmt = select(Trade.id).where(Trade.signature == signature)
            return (await session.execute(stmt)).first() is not None

    async def get_stats(self) -> StatsSnapshot:
        async with self._transaction() as session:
            stats = await session.get(PlatformStats, STATS_ROW_ID)
            if stats is None:
                return StatsSnapshot()
            return StatsSnapshot(
                total_volume=stats.total_volume,
                total_trades=stats.total_trades,
                total_tokens=stats.total_tokens,
                total_migrated=stats.total_migrated,
            )

    async def recent_trades(self, mint: str, limit: int = 50) -> list[TradeRecord]:
        async with self._transaction() as session:
            stmt = (
                select(Trade)
                .join(Token, Trade.token_id == Token.id)
                .where(Token.mint == mint)
                .order_by(Trade.timestamp.desc(), Trade.id.desc())
                .limit(limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_trade_record(r) for r in rows]

    async def trades_between(
        self, mint: str, start: datetime, end: datetime
    ) -> list[TradeRecord]:
        async with self._transaction() as session:
            stmt = (
                select(Trade)
                .join(Token, Trade.token_id == Token.id)
                .where(Token.mint == mint, Trade.timestamp >= start, Trade.timestamp <= end)
                .order_by(Trade.timestamp.asc(), Trade.id.asc())
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_trade_record(r) for r in rows]

    # ── Mutations ─────────────────────────────────────────────────────────

    async def create_token(self, token: NewToken) -> bool:
        """Insert a new curve and count it. False if the mint already exists."""
        try:
            async with self._transaction() as session:
                exists = await session.execute(select(Token.id).where(Token.mint == token.mint))
                if exists.first() is not None:
                    return False
                session.add(
                    Token(
                        mint=token.mint,
                        name=token.name,
                        symbol=token.symbol,
                        creator=token.creator,
                        bonding_curve=token.bonding_curve,
                        creation_tx=token.creation_tx,
                        virtual_sol_reserves=token.virtual_sol_reserves,
                        virtual_token_reserves=token.virtual_token_reserves,
                        real_sol_reserves=token.real_sol_reserves,
                        real_token_reserves=token.real_token_reserves,
                        tokens_sold=0,
                        market_cap_lamports=token.market_cap_lamports,
                        migrated=False,
                        created_at=token.created_at,
                    )
                )
                await self._bump_stats(session, StatsDelta(tokens=1))
                await session.flush()
                return True
        except DuplicateEvent:
            return False

    async def apply_trade(
        self, mint: str, trade: TradeRecord, delta: ReserveDelta, *, total_supply: int
    ) -> CurveSnapshot:
        """Record the trade, move the reserves and bump counters in one transaction.

        Raises DuplicateEvent, UnresolvedToken, CurveMigrated or
        ReserveUnderflow without touching anything.
        """
        async with self._transaction() as session:
            dup = await session.execute(select(Trade.id).where(Trade.signature == trade.signature))
            if dup.first() is not None:
                raise DuplicateEvent(trade.signature)

            token = await self._lock_token(session, mint)
            if token is None:
                raise UnresolvedToken(f"no bonding curve for mint {mint}")
            if token.migrated:
                raise CurveMigrated(mint)

            updated = {
                "virtual_sol_reserves": token.virtual_sol_reserves + delta.virtual_sol,
                "virtual_token_reserves": token.virtual_token_reserves + delta.virtual_token,
                "real_sol_reserves": token.real_sol_reserves + delta.real_sol,
                "real_token_reserves": token.real_token_reserves + delta.real_token,
                "tokens_sold": token.tokens_sold + delta.tokens_sold,
            }
            negative = sorted(k for k, v in updated.items() if v < 0)
            if negative:
                raise ReserveUnderflow(f"{mint}: {', '.join(negative)} would go negative")

            for field_name, value in updated.items():
                setattr(token, field_name, value)
            token.market_cap_lamports = market_cap_lamports(
                token.virtual_sol_reserves, token.virtual_token_reserves, total_supply
            )
            session.add(
                Trade(
                    signature=trade.signature,
                    token_id=token.id,
                    trader=trade.trader,
                    side=trade.side.value,
                    sol_amount=trade.sol_amount,
                    token_amount=trade.token_amount,
                    fee_amount=trade.fee_amount,
                    price=trade.price,
                    timestamp=trade.timestamp,
                )
            )
            await self._bump_stats(session, StatsDelta(volume=delta.volume, trades=1))
            await session.flush()
            return _snapshot(token)

    async def mark_migrated(
        self, mint: str, tx: str, *, migrated_at: datetime | None = None
    ) -> MigrationResult:
        async with self._transaction() as session:
            token = await self._lock_token(session, mint)
            if token is None:
                return MigrationResult.UNKNOWN_TOKEN
            if token.migrated:
                return MigrationResult.ALREADY_MIGRATED
            token.migrated = True
            token.migration_tx = tx
            token.migrated_at = migrated_at or utcnow()
            await self._bump_stats(session, StatsDelta(migrated=1))
            return MigrationResult.APPLIED

    async def increment_stats(self, delta: StatsDelta) -> None:
        async with self._transaction() as session:
            await self._bump_stats(session, delta)

    async def recompute_stats(self) -> StatsSnapshot:
        """Re-derive the denormalised counters from the trades and tokens tables."""
        async with self._transaction() as session:
            volume_expr = case(
                (Trade.side == TradeDirection.SELL.value, Trade.sol_amount + Trade.fee_amount),
                else_=Trade.sol_amount,
            )
            volume, trades = (
                await session.execute(
                    select(func.coalesce(func.sum(volume_expr), 0), func.count(Trade.id))
                )
            ).one()
            tokens, migrated = (
                await session.execute(
                    select(
                        func.count(Token.id),
                        func.coalesce(func.sum(case((Token.migrated.is_(True), 1), else_=0)), 0),
                    )
                )
            ).one()

            stats = await session.get(PlatformStats, STATS_ROW_ID, with_for_update=True)
            if stats is None:
                stats = PlatformStats(id=STATS_ROW_ID)
                session.add(stats)
            stats.total_volume = int(volume)
            stats.total_trades = int(trades)
            stats.total_tokens = int(tokens)
            stats.total_migrated = int(migrated)
            return StatsSnapshot(
                total_volume=stats.total_volume,
                total_trades=stats.total_trades,
                total_tokens=stats.total_tokens,
                total_migrated=stats.total_migrated,
            )
