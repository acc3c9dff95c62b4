"""TopicIndex: bidirectional map between topics and subscribed connections."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from market_data_hub.realtime.topics import Topic

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """Edge between a connection and a topic."""

    topic: Topic
    connection_id: str
    options: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SubscribeResult:
    topic: Topic
    is_new_topic: bool
    is_new_subscription: bool


@dataclass(frozen=True)
class UnsubscribeResult:
    topic: Topic
    is_now_empty: bool
    was_subscribed: bool


class TopicIndex:
    """Subscriber sets per topic and topic sets per connection.

    Both views live in one object and every mutation updates both inside a
    single synchronous method. Nothing here awaits, so on the event loop each
    call is atomic with respect to other subscribe/unsubscribe calls.
    """

    def __init__(self) -> None:
        self._by_topic: dict[Topic, dict[str, Subscription]] = {}
        self._by_connection: dict[str, dict[Topic, Subscription]] = {}

    def subscribe(
        self,
        topic: Topic,
        connection_id: str,
        options: dict[str, Any] | None = None,
    ) -> SubscribeResult:
        subscribers = self._by_topic.get(topic)
        is_new_topic = subscribers is None
        if subscribers is None:
            subscribers = self._by_topic[topic] = {}
        if connection_id in subscribers:
            return SubscribeResult(topic, is_new_topic=False, is_new_subscription=False)
        subscription = Subscription(topic, connection_id, dict(options or {}))
        subscribers[connection_id] = subscription
        self._by_connection.setdefault(connection_id, {})[topic] = subscription
        if is_new_topic:
            logger.debug("Topic %s created by %s", topic, connection_id)
        return SubscribeResult(topic, is_new_topic=is_new_topic, is_new_subscription=True)

    def unsubscribe(self, topic: Topic, connection_id: str) -> UnsubscribeResult:
        """Remove one edge. Unknown edges are a no-op."""
        subscribers = self._by_topic.get(topic)
        if subscribers is None or connection_id not in subscribers:
            return UnsubscribeResult(topic, is_now_empty=False, was_subscribed=False)
        del subscribers[connection_id]
        topics = self._by_connection.get(connection_id)
        if topics is not None:
            topics.pop(topic, None)
            if not topics:
                del self._by_connection[connection_id]
        is_now_empty = not subscribers
        if is_now_empty:
            del self._by_topic[topic]
            logger.debug("Topic %s has no subscribers left", topic)
        return UnsubscribeResult(topic, is_now_empty=is_now_empty, was_subscribed=True)

    def unsubscribe_all(self, connection_id: str) -> list[UnsubscribeResult]:
        """Drop every subscription of a connection (disconnect path)."""
        topics = self._by_connection.pop(connection_id, {})
        results: list[UnsubscribeResult] = []
        for topic in topics:
            subscribers = self._by_topic.get(topic)
            if subscribers is None:
                continue
            subscribers.pop(connection_id, None)
            is_now_empty = not subscribers
            if is_now_empty:
                del self._by_topic[topic]
            results.append(UnsubscribeResult(topic, is_now_empty=is_now_empty, was_subscribed=True))
        return results

    def subscribers_of(self, topic: Topic) -> set[str]:
        return set(self._by_topic.get(topic, ()))

    def topics_of(self, connection_id: str) -> set[Topic]:
        return set(self._by_connection.get(connection_id, ()))

    def options_of(self, topic: Topic, connection_id: str) -> dict[str, Any] | None:
        subscription = self._by_topic.get(topic, {}).get(connection_id)
        return None if subscription is None else dict(subscription.options)

    def topics(self) -> set[Topic]:
        return set(self._by_topic)

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._by_topic.get(topic, ()))

    def __contains__(self, topic: object) -> bool:
        return topic in self._by_topic
