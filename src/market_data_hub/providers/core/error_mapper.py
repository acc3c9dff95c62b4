"""Domain concept for mapping provider exceptions to HTTP responses and fetch errors."""
import asyncio
from dataclasses import dataclass

import httpx
from fastapi import HTTPException

from market_data_hub.realtime.exceptions import FetchError


@dataclass(frozen=True)
class ProviderErrorMapper:
    """Maps provider/backend exceptions to HTTP (status_code, detail).

    REST routes raise the mapped HTTPException; the real-time layer turns the
    same exceptions into FetchError so a poll tick is skipped, not crashed.
    """

    resource_name: str = "Resource"
    api_name: str = "API"

    def to_http(
        self,
        exc: Exception,
        symbol: str | None = None,
    ) -> tuple[int, str]:
        """Map a provider exception to (status_code, detail) for HTTP responses.

        Args:
            exc: The exception raised by the provider.
            symbol: Optional symbol to include in detail (e.g. "BTC").

        Returns:
            (status_code, detail) suitable for HTTPException(status_code=..., detail=...).
        """
        if isinstance(exc, ValueError):
            detail = str(exc) or f"{self.resource_name} not found"
            if symbol is not None and "not found" in detail.lower():
                detail = f"{self.resource_name} '{symbol}' not found"
            return (404, detail)
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status == 404:
                return (404, self._not_found(symbol))
            if status >= 500:
                return (502, f"{self.api_name} error")
            return (status, f"{self.api_name} error")
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            detail = "Request timed out"
            if symbol is not None:
                detail = f"Request to {self.api_name} timed out for '{symbol}'"
            return (504, detail)
        if isinstance(exc, httpx.TransportError):
            return (502, f"{self.api_name} unreachable")
        if isinstance(exc, (KeyError, TypeError)):
            return (404, self._not_found(symbol))
        return (500, "Internal server error")

    def raise_http(
        self,
        exc: Exception,
        symbol: str | None = None,
    ) -> None:
        """Map provider exception to HTTP and raise HTTPException. Never returns."""
        status_code, detail = self.to_http(exc, symbol=symbol)
        raise HTTPException(status_code=status_code, detail=detail) from exc

    def to_fetch_error(
        self,
        exc: Exception,
        topic: str | None = None,
        symbol: str | None = None,
    ) -> FetchError:
        """Wrap a provider exception as a FetchError carrying the mapped detail."""
        status_code, detail = self.to_http(exc, symbol=symbol)
        return FetchError(f"{self.api_name}: {detail} ({status_code})", topic=topic)

    def _not_found(self, symbol: str | None) -> str:
        if symbol is None:
            return f"{self.resource_name} not found"
        return f"{self.resource_name} '{symbol}' not found"
