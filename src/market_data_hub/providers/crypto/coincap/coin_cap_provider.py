"""CoinCap provider: latest per-exchange fills and quotes."""
import os
from typing import Any

import httpx

from market_data_hub.db import Source
from market_data_hub.providers.core import (MarketProviderABC, asset_id_for,
                                            normalize_symbol, round2, to_float)
from market_data_hub.providers.core.utils import COINCAP_IDS, parse_timestamp
from market_data_hub.providers.crypto.coincap.models import CoinCapMarketsParams
from market_data_hub.schemas import MarketQuote, TradeFill, TradeSnapshot


class CoinCapProvider(MarketProviderABC):
    """Trades and quotes via the CoinCap v2 REST API.

    CoinCap has no public trade tape over REST; /markets gives the latest
    price and 24h volume per exchange and pair, which is what a trades tick
    carries.
    """

    BASE_URL = "https://api.coincap.io/v2"

    source = Source.COINCAP

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key or os.getenv("COINCAP_API_KEY")
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = client or httpx.AsyncClient(base_url=self.BASE_URL, headers=headers)

    async def get_quote(self, symbol: str) -> MarketQuote:
        ticker = normalize_symbol(symbol)
        asset_id = asset_id_for(ticker, COINCAP_IDS)
        payload = await self._get(f"/assets/{asset_id}", {})
        row = payload.get("data")
        if not row or to_float(row.get("priceUsd")) is None:
            raise ValueError(f"Coin '{ticker}' not found")
        return MarketQuote(
            source=self.source,
            symbol=ticker,
            value=round2(to_float(row["priceUsd"])),
            volume=round2(to_float(row.get("volumeUsd24Hr"))),
            timestamp=parse_timestamp(payload.get("timestamp"), millis=True),
            metadata={
                "market_cap": round2(to_float(row.get("marketCapUsd"))),
                "change_24h": round2(to_float(row.get("changePercent24Hr"))),
            },
        )

    async def get_trades(self, symbol: str, limit: int = 10) -> TradeSnapshot:
        """Latest fill per exchange for <symbol>/USD, most active exchange first."""
        ticker = normalize_symbol(symbol)
        params = CoinCapMarketsParams(limit=limit).model_dump() | {
            "baseId": asset_id_for(ticker, COINCAP_IDS)
        }
        payload = await self._get("/markets", params)
        fills = [fill for fill in map(self._fill_from_market, payload.get("data") or []) if fill]
        fills.sort(key=lambda f: f.volume_24h or 0.0, reverse=True)
        return TradeSnapshot(source=self.source, symbol=ticker, trades=fills)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _fill_from_market(item: dict) -> TradeFill | None:
        price = to_float(item.get("priceUsd"))
        if price is None:
            return None
        return TradeFill(
            exchange=item.get("exchangeId") or "unknown",
            pair=f"{item.get('baseSymbol')}-{item.get('quoteSymbol')}",
            price=price,
            volume_24h=round2(to_float(item.get("volumeUsd24Hr"))),
            timestamp=parse_timestamp(to_float(item.get("updated")), millis=True),
        )
