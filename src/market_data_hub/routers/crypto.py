"""Cryptocurrency market data routes (CoinGecko)."""
from dependency_injector.wiring import inject
from fastapi import APIRouter, Query

from market_data_hub.container import MarketDataDep
from market_data_hub.schemas import MarketQuote

router = APIRouter(prefix="/crypto", tags=["crypto"])


@router.get("/{symbol}", response_model=MarketQuote)
@inject
async def get_crypto_quote(symbol: str, market_data: MarketDataDep) -> MarketQuote:
    """Get the current quote for a cryptocurrency.

    Args:
        symbol: Ticker (e.g., "BTC", "ETH", "SOL").

    Returns:
        Current market quote with price and metadata.
    """
    return await market_data.get_quote(symbol)


@router.get("/{symbol}/history", response_model=list[MarketQuote])
@inject
async def get_crypto_history(
    symbol: str,
    market_data: MarketDataDep,
    days: int = Query(default=30, ge=1, le=365, description="Number of days of history"),
) -> list[MarketQuote]:
    """Get historical data for a cryptocurrency, ordered by timestamp."""
    return await market_data.get_history(symbol, days)
