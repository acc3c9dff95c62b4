"""Market data payloads produced by providers and pushed on topic updates."""
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from market_data_hub.db import Source


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketQuote(BaseModel):
    """Unified quote across providers."""

    source: Source
    symbol: str
    value: float  # last price in USD
    volume: float | None = None  # 24h volume in USD
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict | None = None


class OrderBookLevel(BaseModel):
    price: float
    quantity: float


class OrderBook(BaseModel):
    """Top-of-book snapshot, depth levels per side."""

    source: Source
    symbol: str
    depth: int
    bids: list[OrderBookLevel]
    asks: list[OrderBookLevel]
    timestamp: datetime = Field(default_factory=_utcnow)


class TradeFill(BaseModel):
    """Latest fill for a pair on one exchange."""

    exchange: str
    pair: str
    price: float
    volume_24h: float | None = None
    timestamp: datetime


class TradeSnapshot(BaseModel):
    source: Source
    symbol: str
    trades: list[TradeFill]
    timestamp: datetime = Field(default_factory=_utcnow)
