"""MarketDataRouter: one entry point over the crypto providers.

The real-time layer calls fetch(kind, scope); provider errors come back as
FetchError. REST routes call get_quote/get_history; provider errors come back
as HTTPException.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from market_data_hub.providers import (CoinCapProvider, CoinGeckoProvider,
                                       CryptoCompareProvider,
                                       ProviderErrorMapper)
from market_data_hub.realtime.exceptions import FetchError
from market_data_hub.realtime.topics import DEFAULT_ORDERBOOK_DEPTH, Topic, TopicKind
from market_data_hub.schemas import MarketQuote, OrderBook, TradeSnapshot

logger = logging.getLogger(__name__)

# Exceptions from providers we map; all others propagate (e.g. bugs, BaseException).
_PROVIDER_EXCEPTIONS: tuple[type[Exception], ...] = (
    ValueError,
    KeyError,
    TypeError,
    TimeoutError,
    OSError,
    asyncio.TimeoutError,
    httpx.HTTPError,
)


class MarketDataRouter:
    """Routes each topic kind to the provider that serves it."""

    def __init__(
        self,
        coingecko: CoinGeckoProvider,
        cryptocompare: CryptoCompareProvider,
        coincap: CoinCapProvider,
    ) -> None:
        self._coingecko = coingecko
        self._cryptocompare = cryptocompare
        self._coincap = coincap
        self._mappers = {
            TopicKind.PRICE: ProviderErrorMapper("Crypto", "CoinGecko"),
            TopicKind.MARKET: ProviderErrorMapper("Crypto", "CoinGecko"),
            TopicKind.ORDERBOOK: ProviderErrorMapper("Order book", "CryptoCompare"),
            TopicKind.TRADES: ProviderErrorMapper("Trades", "CoinCap"),
        }

    @property
    def providers(self) -> list[Any]:
        return [self._coingecko, self._cryptocompare, self._coincap]

    async def fetch(
        self, kind: TopicKind, scope: str, *, depth: int | None = None
    ) -> MarketQuote | OrderBook | TradeSnapshot:
        """Current value for a market topic.

        Raises:
            FetchError: On any upstream failure, or a kind this router does not serve.
        """
        mapper = self._mappers.get(kind)
        if mapper is None:
            raise FetchError(f"Topic kind '{kind.value}' is not market data", topic=scope)
        topic_key = Topic(kind, scope, depth).key
        try:
            match kind:
                case TopicKind.PRICE:
                    return await self._quote_with_fallback(scope)
                case TopicKind.MARKET:
                    return await self._coingecko.get_market(scope)
                case TopicKind.ORDERBOOK:
                    return await self._cryptocompare.get_order_book(
                        scope, depth or DEFAULT_ORDERBOOK_DEPTH
                    )
                case TopicKind.TRADES:
                    return await self._coincap.get_trades(scope)
        except _PROVIDER_EXCEPTIONS as e:
            raise mapper.to_fetch_error(e, topic=topic_key, symbol=scope) from e
        raise FetchError(f"Topic kind '{kind.value}' is not market data", topic=topic_key)

    async def get_quotes(self, symbols: list[str]) -> dict[str, MarketQuote]:
        """Quotes keyed by ticker, in one upstream call. Raises FetchError."""
        mapper = self._mappers[TopicKind.PRICE]
        try:
            quotes = await self._coingecko.get_quotes(symbols)
        except _PROVIDER_EXCEPTIONS as e:
            raise mapper.to_fetch_error(e) from e
        return {q.symbol: q for q in quotes}

    async def get_quote(self, symbol: str) -> MarketQuote:
        """Get current quote. Raises HTTPException on provider errors."""
        try:
            return await self._quote_with_fallback(symbol)
        except _PROVIDER_EXCEPTIONS as e:
            self._mappers[TopicKind.PRICE].raise_http(e, symbol=symbol)

    async def _quote_with_fallback(self, symbol: str) -> MarketQuote:
        """CoinGecko quote; CoinCap, then CryptoCompare, when CoinGecko fails.

        Re-raises the CoinGecko error when every fallback fails too.
        """
        try:
            return await self._coingecko.get_quote(symbol)
        except _PROVIDER_EXCEPTIONS as primary:
            for provider in (self._coincap, self._cryptocompare):
                try:
                    quote = await provider.get_quote(symbol)
                except _PROVIDER_EXCEPTIONS as e:
                    logger.debug("Fallback quote from %s failed: %s", type(provider).__name__, e)
                    continue
                logger.info(
                    "CoinGecko quote for %s failed (%s); served by %s",
                    symbol, primary, type(provider).__name__,
                )
                return quote
            raise

    async def get_history(self, symbol: str, days: int) -> list[MarketQuote]:
        """Get historical quotes. Raises HTTPException on provider errors."""
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        try:
            return await self._coingecko.get_history(symbol, start, end)
        except _PROVIDER_EXCEPTIONS as e:
            self._mappers[TopicKind.PRICE].raise_http(e, symbol=symbol)

    async def close(self) -> None:
        for provider in self.providers:
            try:
                await provider.close()
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Error closing provider %s: %s", type(provider).__name__, exc)
