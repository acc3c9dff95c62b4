"""TopicFetcher: resolves one poll tick of a topic to a collaborator call."""
import asyncio
import logging
from typing import Any

from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.exceptions import FetchError
from market_data_hub.realtime.protocols import MarketDataSource, PortfolioSource
from market_data_hub.realtime.topics import Topic, TopicKind, alerts_topic

logger = logging.getLogger(__name__)

_MARKET_KINDS = frozenset(
    {TopicKind.PRICE, TopicKind.ORDERBOOK, TopicKind.TRADES, TopicKind.MARKET}
)


def _jsonable(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    return dump(mode="json") if callable(dump) else value


class TopicFetcher:
    """Market kinds go to the market data source, portfolio to the portfolio
    source. An alerts tick gathers one observation per distinct scope of the
    user's armed alerts and returns them with the armed set.
    """

    def __init__(
        self,
        market_data: MarketDataSource,
        portfolio: PortfolioSource,
        alert_engine: AlertEngine,
    ) -> None:
        self._market_data = market_data
        self._portfolio = portfolio
        self._alert_engine = alert_engine

    async def fetch(self, topic: Topic) -> Any:
        if topic.kind in _MARKET_KINDS:
            value = await self._market_data.fetch(topic.kind, topic.scope, depth=topic.depth)
            return _jsonable(value)
        if topic.kind is TopicKind.PORTFOLIO:
            return _jsonable(await self._portfolio.snapshot(topic.scope))
        if topic.kind is TopicKind.ALERTS:
            return await self._alert_snapshot(topic.scope)
        raise FetchError(f"No source for topic kind {topic.kind.value}", topic=topic.key)

    async def _alert_snapshot(self, user_id: str) -> dict[str, Any]:
        armed = self._alert_engine.armed_for_user(user_id)
        scopes = sorted({alert.scope_topic for alert in armed}, key=lambda t: t.key)
        results = await asyncio.gather(
            *(self.fetch(scope) for scope in scopes), return_exceptions=True
        )
        observations: dict[str, Any] = {}
        for scope, result in zip(scopes, results):
            if isinstance(result, FetchError):
                logger.warning("Alert observation for %s failed: %s", scope, result)
                continue
            if isinstance(result, BaseException):
                raise result
            observations[scope.key] = result
        if scopes and not observations:
            raise FetchError(f"No alert observations for user {user_id}", topic=alerts_topic(user_id).key)
        return {
            "alerts": [alert.model_dump(mode="json") for alert in armed],
            "observations": observations,
        }
