"""Abstract base class for market data providers."""
from abc import ABC, abstractmethod
from datetime import datetime

from market_data_hub.db import Source
from market_data_hub.schemas import MarketQuote


class MarketProviderABC(ABC):
    """Base interface for all market data providers.

    Providers are thin async HTTP adapters: one request per call, no polling of
    their own. Recurring polling is owned by the real-time scheduler.
    """

    source: Source

    @abstractmethod
    async def get_quote(self, symbol: str) -> MarketQuote:
        """Fetch the current quote for a symbol.

        Args:
            symbol: The asset ticker (e.g., "BTC", "ETH").

        Returns:
            A MarketQuote with the current USD price and 24h volume.
        """

    async def get_history(
        self, symbol: str, start: datetime, end: datetime
    ) -> list[MarketQuote]:
        """Fetch historical quotes for a symbol within a time range.

        Default implementation raises NotImplementedError. Override in providers
        that support historical data.
        """
        raise NotImplementedError("Historical data is not supported by this provider")

    async def close(self) -> None:
        """Clean up resources (connections, clients).

        Override in subclasses if cleanup is needed.
        """

    async def __aenter__(self) -> "MarketProviderABC":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        """Async context manager exit - calls close()."""
        await self.close()
