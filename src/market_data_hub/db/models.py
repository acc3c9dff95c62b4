"""Database models for the market data hub.

Only user/application state is persisted (alerts and portfolio holdings).
Market quotes are fetched on demand and pushed to subscribers; they are not
stored.
"""
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, SQLModel


class Source(str, Enum):
    """Upstream market data provider a quote came from."""

    COINGECKO = "coingecko"
    CRYPTOCOMPARE = "cryptocompare"
    COINCAP = "coincap"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertRecord(SQLModel, table=True):
    """Price, volume, or portfolio-risk alert owned by a user."""

    __tablename__ = "alert"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    kind: str  # PRICE | RISK | VOLUME
    symbol: str | None = None
    condition: str  # above | below | pct_increase | pct_decrease
    threshold: float
    base_price: float | None = None
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    triggered_at: datetime | None = None


class HoldingRecord(SQLModel, table=True):
    """Quantity of one asset held by a user, with its average entry price."""

    __tablename__ = "holding"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    symbol: str
    quantity: float
    average_price: float
