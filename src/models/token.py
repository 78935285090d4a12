from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Token(Base):
    """A launched token and the materialised state of its bonding curve."""

    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(primary_key=True)
    mint: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    symbol: Mapped[str] = mapped_column(String(50))
    creator: Mapped[str] = mapped_column(String(64))
    bonding_curve: Mapped[str] = mapped_column(String(64))
    creation_tx: Mapped[str] = mapped_column(String(128))

    # Reserves in lamports / raw token units (u64 on-chain)
    virtual_sol_reserves: Mapped[int] = mapped_column(BigInteger)
    virtual_token_reserves: Mapped[int] = mapped_column(BigInteger)
    real_sol_reserves: Mapped[int] = mapped_column(BigInteger, default=0)
    real_token_reserves: Mapped[int] = mapped_column(BigInteger)
    tokens_sold: Mapped[int] = mapped_column(BigInteger, default=0)
    market_cap_lamports: Mapped[int] = mapped_column(BigInteger, default=0)

    migrated: Mapped[bool] = mapped_column(Boolean, default=False)
    migration_tx: Mapped[str | None] = mapped_column(String(128))
    migrated_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime)
    indexed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("idx_tokens_creator", "creator"),
        Index("idx_tokens_created_at", "created_at"),
    )
