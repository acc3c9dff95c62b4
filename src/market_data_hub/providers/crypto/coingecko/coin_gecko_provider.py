"""CoinGecko market data provider for cryptocurrencies."""
import os
from datetime import datetime, timezone

import httpx

from market_data_hub.db import Source
from market_data_hub.providers.core import (MarketProviderABC, asset_id_for,
                                            normalize_symbol, round2)
from market_data_hub.providers.core.utils import parse_timestamp
from market_data_hub.providers.crypto.coingecko.models import (
    CoinGeckoHistoryParams, CoinGeckoMarketsParams, CoinGeckoQuoteMetadata,
    CoinGeckoSimplePriceParams)
from market_data_hub.schemas import MarketQuote


class CoinGeckoProvider(MarketProviderABC):
    """Market data provider for cryptocurrencies via CoinGecko API.

    Accepts tickers ("BTC", "ETH") and maps them to CoinGecko ids; quotes are
    returned with the upper-cased ticker as symbol.
    """

    BASE_URL = "https://api.coingecko.com/api/v3"
    PRO_BASE_URL = "https://pro-api.coingecko.com/api/v3"

    source = Source.COINGECKO

    def __init__(
        self,
        api_key: str | None = None,
        use_pro_api: bool = False,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the CoinGecko provider.

        Args:
            api_key: CoinGecko API key. Defaults to COINGECKO_API_KEY env var.
            use_pro_api: Whether to use the Pro API endpoint.
            client: Pre-built HTTP client (tests pass one with a mock transport).
        """
        self._api_key = api_key or os.getenv("COINGECKO_API_KEY")
        self._use_pro_api = use_pro_api or bool(self._api_key)

        headers: dict[str, str] = {"Accept": "application/json"}
        if self._api_key:
            headers["x-cg-pro-api-key"] = self._api_key

        base = self.PRO_BASE_URL if self._use_pro_api else self.BASE_URL
        self._client = client or httpx.AsyncClient(base_url=base, headers=headers)

    async def get_quote(self, symbol: str) -> MarketQuote:
        """Fetch the current quote for a cryptocurrency.

        Raises:
            ValueError: If CoinGecko has no price for the symbol.
        """
        quotes = await self.get_quotes([symbol])
        if not quotes:
            raise ValueError(f"Coin '{normalize_symbol(symbol)}' not found")
        return quotes[0]

    async def get_quotes(self, symbols: list[str]) -> list[MarketQuote]:
        """Fetch quotes for several tickers in one /simple/price call.

        Symbols CoinGecko does not know are left out of the result.
        """
        ids = {asset_id_for(s): normalize_symbol(s) for s in symbols}
        if not ids:
            return []
        params = CoinGeckoSimplePriceParams().model_dump() | {"ids": ",".join(ids)}
        response = await self._client.get("/simple/price", params=params)
        response.raise_for_status()
        data = response.json()

        quotes: list[MarketQuote] = []
        for coin_id, ticker in ids.items():
            row = data.get(coin_id)
            if row and row.get("usd") is not None:
                quotes.append(self._quote_from_simple_price(ticker, coin_id, row))
        return quotes

    async def get_market(self, symbol: str) -> MarketQuote:
        """Fetch market stats (cap, rank, 24h range) from /coins/markets."""
        coin_id = asset_id_for(symbol)
        params = CoinGeckoMarketsParams(per_page=1).model_dump() | {"ids": coin_id}
        response = await self._client.get("/coins/markets", params=params)
        response.raise_for_status()
        items = response.json()
        if not items:
            raise ValueError(f"Coin '{normalize_symbol(symbol)}' not found")
        return self._quote_from_market_item(normalize_symbol(symbol), items[0])

    async def get_history(
        self, symbol: str, start: datetime, end: datetime
    ) -> list[MarketQuote]:
        """Fetch historical price data for a cryptocurrency.

        Returns:
            List of MarketQuotes ordered by timestamp.
        """
        ticker = normalize_symbol(symbol)
        coin_id = asset_id_for(ticker)
        params = CoinGeckoHistoryParams(
            from_ts=int(start.timestamp()),
            to_ts=int(end.timestamp()),
        ).model_dump(by_alias=True)
        response = await self._client.get(
            f"/coins/{coin_id}/market_chart/range",
            params=params,
        )
        response.raise_for_status()
        data = response.json()

        prices = data.get("prices", [])
        volumes = data.get("total_volumes", [])
        market_caps = data.get("market_caps", [])

        volume_by_ts = {int(v[0]): v[1] for v in volumes}
        mcap_by_ts = {int(m[0]): m[1] for m in market_caps}

        return [
            MarketQuote(
                source=self.source,
                symbol=ticker,
                value=round2(float(price)),
                volume=round2(float(volume_by_ts.get(int(ts_ms), 0))) or None,
                timestamp=parse_timestamp(ts_ms, millis=True),
                metadata=CoinGeckoQuoteMetadata(
                    coin_id=coin_id,
                    market_cap=round2(mcap_by_ts.get(int(ts_ms))),
                ).model_dump(exclude_none=True),
            )
            for (ts_ms, price) in (p[:2] for p in prices)
        ]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _quote_from_simple_price(self, ticker: str, coin_id: str, data: dict) -> MarketQuote:
        """Build a MarketQuote from a /simple/price response row."""
        vol = data.get("usd_24h_vol")
        meta = CoinGeckoQuoteMetadata(
            coin_id=coin_id,
            market_cap=round2(data.get("usd_market_cap")),
            change_24h=round2(data.get("usd_24h_change")),
        )
        return MarketQuote(
            source=self.source,
            symbol=ticker,
            value=round2(float(data["usd"])),
            volume=round2(float(vol)) if vol is not None else None,
            timestamp=parse_timestamp(data.get("last_updated_at")),
            metadata=meta.model_dump(exclude_none=True),
        )

    def _quote_from_market_item(self, ticker: str, item: dict) -> MarketQuote:
        """Build a MarketQuote from a /coins/markets response item."""
        vol = item.get("total_volume")
        meta = CoinGeckoQuoteMetadata(
            coin_id=item.get("id"),
            market_cap=round2(item.get("market_cap")),
            change_24h=round2(item.get("price_change_percentage_24h")),
            high_24h=round2(item.get("high_24h")),
            low_24h=round2(item.get("low_24h")),
            market_cap_rank=item.get("market_cap_rank"),
        )
        return MarketQuote(
            source=self.source,
            symbol=ticker,
            value=round2(float(item["current_price"])),
            volume=round2(float(vol)) if vol is not None else None,
            timestamp=datetime.now(timezone.utc),
            metadata=meta.model_dump(exclude_none=True),
        )
