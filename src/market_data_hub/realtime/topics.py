"""Topic keys: parsing, canonical form, and per-kind cadence."""
from dataclasses import dataclass
from enum import Enum

from market_data_hub.realtime.exceptions import MessageValidationError

DEFAULT_ORDERBOOK_DEPTH = 20
MAX_ORDERBOOK_DEPTH = 100


class TopicKind(str, Enum):
    """Kinds of stream a client can subscribe to."""

    PRICE = "price"
    ORDERBOOK = "orderbook"
    TRADES = "trades"
    MARKET = "market"
    PORTFOLIO = "portfolio"
    ALERTS = "alerts"


# Seconds between polls for each kind.
DEFAULT_CADENCES: dict[TopicKind, float] = {
    TopicKind.PRICE: 5.0,
    TopicKind.ORDERBOOK: 1.0,
    TopicKind.TRADES: 2.0,
    TopicKind.MARKET: 5.0,
    TopicKind.PORTFOLIO: 10.0,
    TopicKind.ALERTS: 30.0,
}

_USER_SCOPED = frozenset({TopicKind.PORTFOLIO, TopicKind.ALERTS})


@dataclass(frozen=True)
class Topic:
    """A named stream, identified by kind and scope.

    scope is an upper-cased symbol for market kinds and a user id for
    portfolio/alerts. depth is set only for order books.
    """

    kind: TopicKind
    scope: str
    depth: int | None = None

    @property
    def key(self) -> str:
        if self.kind is TopicKind.ORDERBOOK:
            return f"{self.kind.value}:{self.scope}:{self.depth}"
        return f"{self.kind.value}:{self.scope}"

    @property
    def is_user_scoped(self) -> bool:
        return self.kind in _USER_SCOPED

    @property
    def update_type(self) -> str:
        """Outgoing message type for ticks of this topic (e.g. price_update)."""
        return f"{self.kind.value}_update"

    def __str__(self) -> str:
        return self.key


def price_topic(symbol: str) -> Topic:
    return Topic(TopicKind.PRICE, symbol.strip().upper())


def portfolio_topic(user_id: str) -> Topic:
    return Topic(TopicKind.PORTFOLIO, user_id)


def alerts_topic(user_id: str) -> Topic:
    return Topic(TopicKind.ALERTS, user_id)


def parse_topic(
    raw: str,
    *,
    user_id: str | None = None,
    depth: int | None = None,
) -> Topic:
    """Parse a client topic string into its canonical Topic.

    Accepts "price:btc", "orderbook:ETH", "orderbook:ETH:50", and "portfolio" /
    "alerts" with or without a scope (the scope defaults to user_id). A
    user-scoped topic naming another user is rejected.

    Raises:
        MessageValidationError: If the string is malformed or not allowed.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MessageValidationError("Topic must be a non-empty string")
    parts = [p.strip() for p in raw.strip().split(":")]
    try:
        kind = TopicKind(parts[0].lower())
    except ValueError as exc:
        raise MessageValidationError(f"Unknown topic kind in '{raw}'") from exc

    if kind in _USER_SCOPED:
        if len(parts) > 2:
            raise MessageValidationError(f"Malformed topic '{raw}'")
        scope = parts[1] if len(parts) == 2 and parts[1] else user_id
        if scope is None:
            raise MessageValidationError(f"Topic '{raw}' requires a user scope")
        if user_id is not None and scope != user_id:
            raise MessageValidationError(f"Not authorized for topic '{raw}'")
        return Topic(kind, scope)

    if len(parts) < 2 or not parts[1]:
        raise MessageValidationError(f"Topic '{raw}' requires a symbol")
    symbol = parts[1].upper()

    if kind is TopicKind.ORDERBOOK:
        if len(parts) > 3:
            raise MessageValidationError(f"Malformed topic '{raw}'")
        if len(parts) == 3:
            try:
                depth = int(parts[2])
            except ValueError as exc:
                raise MessageValidationError(
                    f"Order book depth must be an integer in '{raw}'"
                ) from exc
        depth = depth or DEFAULT_ORDERBOOK_DEPTH
        if not 1 <= depth <= MAX_ORDERBOOK_DEPTH:
            raise MessageValidationError(
                f"Order book depth must be between 1 and {MAX_ORDERBOOK_DEPTH}"
            )
        return Topic(kind, symbol, depth)

    if len(parts) > 2:
        raise MessageValidationError(f"Malformed topic '{raw}'")
    return Topic(kind, symbol)

