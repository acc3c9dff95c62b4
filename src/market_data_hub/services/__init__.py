"""Service layer: collaborators behind the real-time layer and the REST routes."""
from market_data_hub.services.alert_store import SqlAlertStore
from market_data_hub.services.auth import JwtAuthValidator
from market_data_hub.services.market_data import MarketDataRouter
from market_data_hub.services.portfolio import HoldingsPortfolioSource

__all__ = [
    "HoldingsPortfolioSource",
    "JwtAuthValidator",
    "MarketDataRouter",
    "SqlAlertStore",
]
