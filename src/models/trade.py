from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Trade(Base):
    """Executed bonding-curve trade. Written once, never updated."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(primary_key=True)
    signature: Mapped[str] = mapped_column(String(128), unique=True)
    token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id"))
    trader: Mapped[str] = mapped_column(String(64))
    side: Mapped[str] = mapped_column(String(10))  # "BUY" | "SELL"
    sol_amount: Mapped[int] = mapped_column(BigInteger)
    token_amount: Mapped[int] = mapped_column(BigInteger)
    fee_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    # Lamports per raw token unit as logged, 18 decimal places
    price: Mapped[Decimal] = mapped_column(Numeric(38, 18))
    timestamp: Mapped[datetime] = mapped_column(DateTime)

    __table_args__ = (Index("idx_trades_token_time", "token_id", "timestamp"),)
