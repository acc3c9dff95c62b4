"""Core provider abstractions."""
from market_data_hub.providers.core.error_mapper import ProviderErrorMapper
from market_data_hub.providers.core.market_provider_abc import MarketProviderABC
from market_data_hub.providers.core.utils import (asset_id_for, normalize_symbol,
                                                  round2, to_float)

__all__ = [
    "MarketProviderABC",
    "ProviderErrorMapper",
    "asset_id_for",
    "normalize_symbol",
    "round2",
    "to_float",
]
