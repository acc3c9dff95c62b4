"""Pydantic schemas for API and runtime use. Not persisted to DB."""
from market_data_hub.schemas.alerts import (Alert, AlertCondition, AlertKind,
                                            AlertSpec, TriggeredAlert)
from market_data_hub.schemas.portfolio import (PortfolioAsset,
                                               PortfolioSummary, RiskLevel)
from market_data_hub.schemas.quotes import (MarketQuote, OrderBook,
                                            OrderBookLevel, TradeFill,
                                            TradeSnapshot)

__all__ = [
    "Alert",
    "AlertCondition",
    "AlertKind",
    "AlertSpec",
    "MarketQuote",
    "OrderBook",
    "OrderBookLevel",
    "PortfolioAsset",
    "PortfolioSummary",
    "RiskLevel",
    "TradeFill",
    "TradeSnapshot",
    "TriggeredAlert",
]
