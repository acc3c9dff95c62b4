"""API routers.

Includes routes for:
- /ws - WebSocket real-time subscriptions (price, orderbook, trades, market, portfolio, alerts)
- /realtime/status - Real-time layer counters
- /alerts - Alert management (bearer auth)
- /crypto - Cryptocurrency quotes and history (CoinGecko)
- /portfolio - Holdings and portfolio summary (bearer auth)
"""
from market_data_hub.routers.alerts import router as alerts_router
from market_data_hub.routers.crypto import router as crypto_router
from market_data_hub.routers.portfolio import router as portfolio_router
from market_data_hub.routers.realtime import router as realtime_router

__all__ = [
    "alerts_router",
    "crypto_router",
    "portfolio_router",
    "realtime_router",
]
