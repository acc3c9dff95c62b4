"""Protocols for the collaborators the real-time layer consumes."""
from dataclasses import dataclass
from typing import Any, Protocol

from market_data_hub.realtime.topics import TopicKind
from market_data_hub.schemas import Alert, AlertSpec, PortfolioSummary


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str


class AuthValidator(Protocol):
    """Validates a bearer credential. Raises AuthError when it is not valid."""

    def validate_token(self, token: str) -> AuthenticatedUser: ...


class MarketDataSource(Protocol):
    """Fetches the current value for a market topic (price, orderbook, ...)."""

    async def fetch(
        self, kind: TopicKind, scope: str, *, depth: int | None = None
    ) -> Any:
        """Return a JSON-ready value. Raises FetchError on upstream failure."""
        ...


class PortfolioSource(Protocol):
    async def snapshot(self, user_id: str) -> PortfolioSummary: ...


class AlertStore(Protocol):
    """External persistence for alert rules."""

    async def load_all(self) -> list[Alert]: ...

    async def create(self, user_id: str, spec: AlertSpec) -> Alert: ...

    async def disable(self, alert_id: int) -> None: ...

    async def rearm(self, alert_id: int, base_price: float | None = None) -> Alert: ...

    async def get(self, alert_id: int) -> Alert | None: ...

    async def list_for_user(self, user_id: str) -> list[Alert]: ...
