"""Shared utilities for market data providers."""
from datetime import datetime, timezone
from typing import Any

DECIMALS = 2

# Ticker -> CoinGecko / CoinCap asset id. Unknown tickers fall back to the
# lower-cased ticker, which matches for many smaller assets.
ASSET_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "SOL": "solana",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "LTC": "litecoin",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "TRX": "tron",
    "USDT": "tether",
    "USDC": "usd-coin",
}

# CoinCap uses its own ids for a few assets.
COINCAP_IDS: dict[str, str] = {
    **ASSET_IDS,
    "BNB": "binance-coin",
    "MATIC": "polygon",
    "AVAX": "avalanche",
}


def normalize_symbol(symbol: str) -> str:
    """Normalize a ticker (strip, uppercase)."""
    return symbol.strip().upper()


def asset_id_for(symbol: str, ids: dict[str, str] | None = None) -> str:
    """Map a ticker to the provider's asset id."""
    ticker = normalize_symbol(symbol)
    return (ids or ASSET_IDS).get(ticker, ticker.lower())


def round2(x: float | None) -> float | None:
    """Round a value to 2 decimal places; preserve None."""
    if x is None:
        return None
    return round(float(x), DECIMALS)


def to_float(value: Any) -> float | None:
    """Parse numbers that some APIs send as strings; None for missing/invalid."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(ts: float | None, *, millis: bool = False) -> datetime:
    """Convert an optional Unix timestamp to an aware datetime; fallback to now."""
    if ts is None:
        return datetime.now(timezone.utc)
    seconds = ts / 1000 if millis else ts
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
