"""CryptoCompare provider: order book snapshots and quotes."""
import os
from typing import Any

import httpx

from market_data_hub.db import Source
from market_data_hub.providers.core import (MarketProviderABC,
                                            normalize_symbol, round2, to_float)
from market_data_hub.providers.core.utils import parse_timestamp
from market_data_hub.providers.crypto.cryptocompare.models import (
    CryptoCompareOrderBookParams, CryptoComparePriceParams)
from market_data_hub.schemas import MarketQuote, OrderBook, OrderBookLevel


class CryptoCompareProvider(MarketProviderABC):
    """Order books and quotes via the CryptoCompare min-api.

    CryptoCompare reports most errors with HTTP 200 and {"Response": "Error"};
    those are raised as ValueError.
    """

    BASE_URL = "https://min-api.cryptocompare.com"

    source = Source.CRYPTOCOMPARE

    def __init__(
        self,
        api_key: str | None = None,
        exchange: str = "coinbase",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the CryptoCompare provider.

        Args:
            api_key: API key. Defaults to CRYPTOCOMPARE_API_KEY env var.
            exchange: Exchange whose order book is read.
            client: Pre-built HTTP client (tests pass one with a mock transport).
        """
        self._api_key = api_key or os.getenv("CRYPTOCOMPARE_API_KEY")
        self._exchange = exchange
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Apikey {self._api_key}"
        self._client = client or httpx.AsyncClient(base_url=self.BASE_URL, headers=headers)

    async def get_quote(self, symbol: str) -> MarketQuote:
        ticker = normalize_symbol(symbol)
        params = CryptoComparePriceParams().model_dump() | {"fsyms": ticker}
        payload = await self._get("/data/pricemultifull", params)
        row = (payload.get("RAW") or {}).get(ticker, {}).get("USD")
        if not row or row.get("PRICE") is None:
            raise ValueError(f"Coin '{ticker}' not found")
        return MarketQuote(
            source=self.source,
            symbol=ticker,
            value=round2(float(row["PRICE"])),
            volume=round2(to_float(row.get("VOLUME24HOURTO"))),
            timestamp=parse_timestamp(row.get("LASTUPDATE")),
            metadata={
                "market_cap": round2(to_float(row.get("MKTCAP"))),
                "change_24h": round2(to_float(row.get("CHANGEPCT24HOUR"))),
            },
        )

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        """Top `depth` levels per side, bids high to low, asks low to high."""
        ticker = normalize_symbol(symbol)
        params = CryptoCompareOrderBookParams(e=self._exchange, limit=depth).model_dump() | {
            "fsyms": ticker
        }
        payload = await self._get("/data/v2/ob/l2/snapshot", params)
        data = payload.get("Data") or {}
        if "BID" not in data and len(data) == 1:
            data = next(iter(data.values()))
        if "BID" not in data and "ASK" not in data:
            raise ValueError(f"Order book for '{ticker}' not found")

        bids = sorted(self._levels(data.get("BID")), key=lambda lv: lv.price, reverse=True)
        asks = sorted(self._levels(data.get("ASK")), key=lambda lv: lv.price)
        return OrderBook(
            source=self.source,
            symbol=ticker,
            depth=depth,
            bids=bids[:depth],
            asks=asks[:depth],
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict) and payload.get("Response") == "Error":
            raise ValueError(payload.get("Message") or "CryptoCompare error")
        return payload

    @staticmethod
    def _levels(rows: list[dict] | None) -> list[OrderBookLevel]:
        levels: list[OrderBookLevel] = []
        for row in rows or []:
            price, quantity = to_float(row.get("P")), to_float(row.get("Q"))
            if price is not None and quantity is not None:
                levels.append(OrderBookLevel(price=price, quantity=quantity))
        return levels
