"""Models for CoinCap provider (API params)."""
from pydantic import BaseModel


class CoinCapMarketsParams(BaseModel):
    """Params for /markets (get_trades). Merge with 'baseId' at call site."""

    quoteSymbol: str = "USD"
    limit: int = 10
