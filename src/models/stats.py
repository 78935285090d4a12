from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base

STATS_ROW_ID = "singleton"


class PlatformStats(Base):
    """Denormalised platform counters. One row, id="singleton"."""

    __tablename__ = "platform_stats"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default=STATS_ROW_ID)
    total_volume: Mapped[int] = mapped_column(BigInteger, default=0)
    total_trades: Mapped[int] = mapped_column(BigInteger, default=0)
    total_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    total_migrated: Mapped[int] = mapped_column(BigInteger, default=0)
