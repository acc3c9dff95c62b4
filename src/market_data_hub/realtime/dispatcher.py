"""FanoutDispatcher: turns "publish to topic" / "notify user" into socket sends."""
import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from market_data_hub.realtime.exceptions import DeliveryError
from market_data_hub.realtime.registry import Connection, ConnectionRegistry
from market_data_hub.realtime.topic_index import TopicIndex
from market_data_hub.realtime.topics import Topic

logger = logging.getLogger(__name__)

FailureHandler = Callable[[str, DeliveryError], None]


@dataclass
class DeliveryReport:
    """Outcome of one fan-out, per connection id."""

    delivered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failures)


class FanoutDispatcher:
    """Single choke point for outgoing messages.

    Connections that are not alive/active are skipped, never queued. A failed
    or timed-out send is isolated to its connection, recorded in the report,
    and handed to the failure handler (the gateway closes that connection).
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        topic_index: TopicIndex,
        *,
        send_timeout: float = 5.0,
    ) -> None:
        self._registry = registry
        self._topic_index = topic_index
        self._send_timeout = send_timeout
        self._on_failure: FailureHandler | None = None

    def set_failure_handler(self, handler: FailureHandler) -> None:
        self._on_failure = handler

    async def publish(self, topic: Topic, payload: dict[str, Any]) -> DeliveryReport:
        """Send payload to every live subscriber of topic."""
        return await self._fan_out(self._topic_index.subscribers_of(topic), payload)

    async def notify_user(self, user_id: str, payload: dict[str, Any]) -> DeliveryReport:
        """Send payload to every live session of user_id."""
        return await self._fan_out(self._registry.connections_for_user(user_id), payload)

    async def broadcast(self, payload: dict[str, Any]) -> DeliveryReport:
        """Send payload to every live connection (heartbeat pings)."""
        return await self._fan_out((c.id for c in self._registry.all()), payload)

    async def send(self, connection: Connection, payload: dict[str, Any]) -> bool:
        """Send to one connection, keeping per-connection order.

        Returns False without sending when the connection died while this send
        waited for its turn. A failed send marks the connection dead before the
        next queued send runs.

        Raises:
            DeliveryError: If the transport fails or the send times out.
        """
        async with connection.send_lock:
            if not connection.alive:
                return False
            try:
                await asyncio.wait_for(
                    connection.transport.send_json(payload), timeout=self._send_timeout
                )
            except asyncio.TimeoutError as exc:
                connection.alive = False
                raise DeliveryError(connection.id, "send timed out") from exc
            except Exception as exc:  # pylint: disable=broad-except
                connection.alive = False
                raise DeliveryError(connection.id, f"{type(exc).__name__}: {exc}") from exc
            return True

    async def _fan_out(
        self, connection_ids: Iterable[str], payload: dict[str, Any]
    ) -> DeliveryReport:
        report = DeliveryReport()
        targets: list[Connection] = []
        for connection_id in sorted(connection_ids):
            connection = self._registry.get(connection_id)
            if connection is None or not connection.is_deliverable:
                report.skipped.append(connection_id)
                continue
            targets.append(connection)
        if not targets:
            return report

        results = await asyncio.gather(
            *(self.send(c, payload) for c in targets), return_exceptions=True
        )
        for connection, result in zip(targets, results):
            if isinstance(result, DeliveryError):
                report.failures[connection.id] = str(result)
                self._handle_failure(connection, result)
            elif isinstance(result, BaseException):
                raise result
            elif result:
                report.delivered.append(connection.id)
            else:
                report.skipped.append(connection.id)
        return report

    def _handle_failure(self, connection: Connection, error: DeliveryError) -> None:
        logger.warning("Delivery to %s failed: %s", connection.id, error)
        self._registry.mark_dead(connection.id)
        if self._on_failure is not None:
            self._on_failure(connection.id, error)
