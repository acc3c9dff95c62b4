"""Cryptocurrency market data providers."""
from market_data_hub.providers.crypto.coincap.coin_cap_provider import CoinCapProvider
from market_data_hub.providers.crypto.coingecko.coin_gecko_provider import (
    CoinGeckoProvider,
)
from market_data_hub.providers.crypto.cryptocompare.crypto_compare_provider import (
    CryptoCompareProvider,
)

__all__ = ["CoinCapProvider", "CoinGeckoProvider", "CryptoCompareProvider"]
