"""Market data providers for cryptocurrencies.

Thin async HTTP adapters, one per upstream API:

- CoinGeckoProvider: prices, market stats and history
- CryptoCompareProvider: order book snapshots
- CoinCapProvider: latest fills per exchange

All providers implement MarketProviderABC and return unified pydantic
schemas (MarketQuote, OrderBook, TradeSnapshot).

Example:
    async with CoinGeckoProvider() as provider:
        quote = await provider.get_quote("BTC")
        print(f"{quote.symbol}: ${quote.value}")
"""
from market_data_hub.providers.core import MarketProviderABC, ProviderErrorMapper
from market_data_hub.providers.crypto import (CoinCapProvider,
                                              CoinGeckoProvider,
                                              CryptoCompareProvider)

__all__ = [
    "CoinCapProvider",
    "CoinGeckoProvider",
    "CryptoCompareProvider",
    "MarketProviderABC",
    "ProviderErrorMapper",
]
