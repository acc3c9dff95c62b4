"""SubscriptionGateway: per-connection state machine for the /ws endpoint.

Connecting -> Authenticating -> Active -> Closing -> Closed

serve() drives a FastAPI WebSocket through the whole lifecycle. The lower-level
methods (open, authenticate, handle_text, close) only need a Transport, so they
can be driven directly.
"""
import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, assert_never

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ValidationError

from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.dispatcher import FanoutDispatcher
from market_data_hub.realtime.exceptions import (AlertNotFoundError, AuthError,
                                                 DeliveryError,
                                                 MessageValidationError)
from market_data_hub.realtime.protocols import AuthValidator
from market_data_hub.realtime.registry import (Connection, ConnectionRegistry,
                                               ConnectionState, Transport)
from market_data_hub.realtime.scheduler import PollingScheduler, Sleep
from market_data_hub.realtime.topic_index import TopicIndex
from market_data_hub.realtime.topics import Topic, alerts_topic, parse_topic
from market_data_hub.schemas.messages import (AlertCreatedMessage,
                                              AlertRearmedMessage,
                                              AuthenticateMessage,
                                              ClientMessage, ConnectionMessage,
                                              ErrorMessage, PingMessage,
                                              PongMessage, RearmAlertMessage,
                                              SetupAlertMessage,
                                              SubscribeMessage,
                                              SubscriptionOptions,
                                              SubscriptionSuccessMessage,
                                              UnsubscribeMessage,
                                              UnsubscriptionSuccessMessage,
                                              client_message_adapter, to_wire)

logger = logging.getLogger(__name__)

CLOSE_NORMAL = status.WS_1000_NORMAL_CLOSURE
CLOSE_GOING_AWAY = status.WS_1001_GOING_AWAY
CLOSE_AUTH_FAILED = status.WS_1008_POLICY_VIOLATION
CLOSE_SEND_FAILED = status.WS_1011_INTERNAL_ERROR
CLOSE_HEARTBEAT_TIMEOUT = 4001


def token_from_handshake(websocket: WebSocket) -> str | None:
    """Credential from the `token` query param or an `Authorization: Bearer` header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization") or ""
    scheme, _, credential = header.partition(" ")
    if scheme.lower() == "bearer" and credential.strip():
        return credential.strip()
    return None


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one incoming frame.

    Raises:
        MessageValidationError: On invalid JSON, unknown type or bad fields.
    """
    try:
        return client_message_adapter.validate_json(raw)
    except ValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        if first.get("type") == "union_tag_invalid":
            tag = (first.get("ctx") or {}).get("tag")
            raise MessageValidationError(f"Unknown message type '{tag}'") from exc
        if first.get("type") == "union_tag_not_found":
            raise MessageValidationError("Message has no 'type' field") from exc
        if first.get("type") == "json_invalid":
            raise MessageValidationError("Invalid JSON") from exc
        location = ".".join(str(p) for p in first.get("loc", ())[1:])
        detail = first.get("msg", "invalid message")
        raise MessageValidationError(
            f"{location}: {detail}" if location else detail
        ) from exc


class SubscriptionGateway:
    """Owns the connection lifecycle and routes client messages.

    Registry and topic index mutations for one logical operation (subscribe,
    unsubscribe, disconnect) run without an await in between, so they are
    atomic on the event loop. Cleanup runs once per connection, guarded by
    its state, whichever of transport close, heartbeat timeout or send
    failure gets there first.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        topic_index: TopicIndex,
        scheduler: PollingScheduler,
        dispatcher: FanoutDispatcher,
        alert_engine: AlertEngine,
        auth_validator: AuthValidator,
        *,
        heartbeat_interval: float = 30.0,
        auth_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._topic_index = topic_index
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._alert_engine = alert_engine
        self._auth = auth_validator
        self._heartbeat_interval = heartbeat_interval
        self._auth_timeout = auth_timeout
        self._clock = clock
        self._sleep = sleep
        self._heartbeat_task: asyncio.Task | None = None
        self._cleanup_tasks: set[asyncio.Task] = set()
        dispatcher.set_failure_handler(self.schedule_cleanup)

    # ---- FastAPI entry point ----
    async def serve(self, websocket: WebSocket) -> None:
        """Run one WebSocket from accept to cleanup."""
        await websocket.accept()
        connection = self.open(websocket)
        close_code = CLOSE_NORMAL
        transport_gone = False
        try:
            token = token_from_handshake(websocket) or await self._read_credential(websocket)
            if not await self.authenticate(connection.id, token):
                return
            while connection.state is ConnectionState.ACTIVE:
                raw = await websocket.receive_text()
                await self.handle_text(connection.id, raw)
        except WebSocketDisconnect as exc:
            transport_gone = True
            logger.info("Connection %s disconnected (code=%s)", connection.id, exc.code)
        except Exception:  # pylint: disable=broad-except
            if connection.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
                return
            logger.exception("Receive loop failed for %s", connection.id)
            close_code = CLOSE_SEND_FAILED
        finally:
            await self.close(
                connection.id, code=close_code, reason="", close_transport=not transport_gone
            )

    async def _read_credential(self, websocket: WebSocket) -> str | None:
        """Wait up to auth_timeout for an `authenticate` message."""
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=self._auth_timeout)
        except asyncio.TimeoutError:
            logger.info("No credential within %.1fs", self._auth_timeout)
            return None
        try:
            message = parse_client_message(raw)
        except MessageValidationError as exc:
            logger.info("Invalid first message: %s", exc)
            return None
        if isinstance(message, AuthenticateMessage):
            return message.token
        logger.info("First message was '%s', expected 'authenticate'", message.type)
        return None

    # ---- Lifecycle ----
    def open(self, transport: Transport) -> Connection:
        """Register an accepted transport; it now awaits a credential."""
        connection = Connection(transport=transport)
        self._registry.register(connection)
        connection.state = ConnectionState.AUTHENTICATING
        logger.debug("Connection %s accepted", connection.id)
        return connection

    async def authenticate(self, connection_id: str, token: str | None) -> bool:
        """Validate the credential and activate the connection.

        On failure the client gets an `error` message and the connection is
        closed with 1008. Returns whether the connection is now active.
        """
        connection = self._registry.get(connection_id)
        if connection is None or connection.state is not ConnectionState.AUTHENTICATING:
            return False
        try:
            if not token:
                raise AuthError("Missing credential")
            user = self._auth.validate_token(token)
        except AuthError as exc:
            logger.info("Authentication failed for %s: %s", connection_id, exc)
            await self._send_quietly(
                connection, ErrorMessage(message=f"Authentication failed: {exc}")
            )
            await self.close(connection_id, code=CLOSE_AUTH_FAILED, reason="Authentication failed")
            return False

        self._registry.attach_user(connection_id, user.user_id)
        self._registry.mark_alive(connection_id, self._clock())
        connection.state = ConnectionState.ACTIVE
        logger.info("Connection %s authenticated as %s", connection_id, user.user_id)
        await self._reply(
            connection, ConnectionMessage(client_id=connection.id, user_id=user.user_id)
        )
        return connection.state is ConnectionState.ACTIVE

    async def close(
        self,
        connection_id: str,
        *,
        code: int = CLOSE_NORMAL,
        reason: str = "",
        close_transport: bool = True,
    ) -> bool:
        """Tear down a connection exactly once. Returns False if already closing."""
        connection = self._registry.get(connection_id)
        if connection is None or connection.state in (
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
        ):
            return False
        connection.state = ConnectionState.CLOSING
        self._registry.mark_dead(connection_id)
        for result in self._topic_index.unsubscribe_all(connection_id):
            if result.is_now_empty:
                self._scheduler.stop(result.topic)
        self._registry.remove(connection_id)
        connection.state = ConnectionState.CLOSED
        logger.info("Connection %s closed (code=%s %s)", connection_id, code, reason)

        if close_transport:
            try:
                await connection.transport.close(code=code, reason=reason)
            except Exception as exc:  # pylint: disable=broad-except
                logger.debug("Transport for %s already closed: %s", connection_id, exc)
        return True

    def schedule_cleanup(self, connection_id: str, error: DeliveryError) -> None:
        """Failure handler for the dispatcher: close the connection off-path."""
        task = asyncio.create_task(
            self.close(connection_id, code=CLOSE_SEND_FAILED, reason="Send failed")
        )
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        logger.debug("Cleanup scheduled for %s: %s", connection_id, error)

    # ---- Messages ----
    async def handle_text(self, connection_id: str, raw: str | bytes) -> None:
        """Handle one incoming frame of an active connection."""
        connection = self._registry.get(connection_id)
        if connection is None or connection.state is not ConnectionState.ACTIVE:
            return
        self._registry.mark_alive(connection_id, self._clock())
        try:
            message = parse_client_message(raw)
        except MessageValidationError as exc:
            await self._reply(connection, ErrorMessage(message=str(exc)))
            return
        await self.handle_message(connection, message)

    async def handle_message(self, connection: Connection, message: ClientMessage) -> None:
        try:
            match message:
                case SubscribeMessage():
                    await self._on_subscribe(connection, message)
                case UnsubscribeMessage():
                    await self._on_unsubscribe(connection, message)
                case SetupAlertMessage():
                    await self._on_setup_alert(connection, message)
                case RearmAlertMessage():
                    await self._on_rearm_alert(connection, message)
                case PongMessage():
                    pass
                case AuthenticateMessage():
                    raise MessageValidationError("Already authenticated")
                case _:
                    assert_never(message)
        except (MessageValidationError, AlertNotFoundError) as exc:
            await self._reply(connection, ErrorMessage(message=str(exc)))

    async def _on_subscribe(self, connection: Connection, message: SubscribeMessage) -> None:
        options = message.options or SubscriptionOptions()
        topics = self._parse_topics(connection, message.topics, depth=options.depth)
        self.subscribe(connection, topics, options)
        await self._reply(connection, SubscriptionSuccessMessage(topics=[t.key for t in topics]))

    async def _on_unsubscribe(self, connection: Connection, message: UnsubscribeMessage) -> None:
        topics = self._parse_topics(connection, message.topics)
        for topic in topics:
            result = self._topic_index.unsubscribe(topic, connection.id)
            if result.is_now_empty:
                self._scheduler.stop(topic)
        await self._reply(connection, UnsubscriptionSuccessMessage(topics=[t.key for t in topics]))

    async def _on_setup_alert(self, connection: Connection, message: SetupAlertMessage) -> None:
        user_id = connection.user_id or ""
        try:
            alert = await self._alert_engine.create(user_id, message.alert_spec)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to create alert for %s", user_id)
            await self._reply(connection, ErrorMessage(message="Failed to create alert"))
            return
        if connection.state is ConnectionState.ACTIVE:
            self.subscribe(connection, [alerts_topic(user_id)])
        await self._reply(connection, AlertCreatedMessage(alert=alert))

    async def _on_rearm_alert(self, connection: Connection, message: RearmAlertMessage) -> None:
        user_id = connection.user_id or ""
        try:
            alert = await self._alert_engine.rearm(user_id, message.alert_id, message.base_price)
        except AlertNotFoundError:
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to rearm alert %s for %s", message.alert_id, user_id)
            await self._reply(connection, ErrorMessage(message="Failed to rearm alert"))
            return
        await self._reply(connection, AlertRearmedMessage(alert=alert))

    def _parse_topics(
        self, connection: Connection, raw_topics: list[str], *, depth: int | None = None
    ) -> list[Topic]:
        topics: list[Topic] = []
        for raw in raw_topics:
            topic = parse_topic(raw, user_id=connection.user_id, depth=depth)
            if topic not in topics:
                topics.append(topic)
        return topics

    def subscribe(
        self,
        connection: Connection,
        topics: list[Topic],
        options: SubscriptionOptions | None = None,
    ) -> None:
        """Add subscriptions and start polling topics that just got their first subscriber."""
        options = options or SubscriptionOptions()
        stored = options.model_dump(exclude_none=True)
        for topic in topics:
            result = self._topic_index.subscribe(topic, connection.id, stored)
            if result.is_new_topic:
                self._scheduler.start(topic, interval=options.interval)

    async def _reply(self, connection: Connection, message: BaseModel) -> None:
        try:
            await self._dispatcher.send(connection, to_wire(message))
        except DeliveryError as exc:
            logger.warning("Reply to %s failed: %s", connection.id, exc)
            self._registry.mark_dead(connection.id)
            self.schedule_cleanup(connection.id, exc)

    async def _send_quietly(self, connection: Connection, message: BaseModel) -> None:
        try:
            await self._dispatcher.send(connection, to_wire(message))
        except DeliveryError as exc:
            logger.debug("Send to %s failed before close: %s", connection.id, exc)

    # ---- Heartbeat ----
    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")

    async def _heartbeat_loop(self) -> None:
        """Ping every interval; wake early for the next silence deadline."""
        next_ping = self._clock() + self._heartbeat_interval
        while True:
            now = self._clock()
            deadline = self.next_stale_deadline()
            wake_at = next_ping if deadline is None else min(next_ping, deadline)
            await self._sleep(max(wake_at - now, 0.0))
            now = self._clock()
            try:
                await self.close_stale(now)
                if now >= next_ping:
                    await self._dispatcher.broadcast(to_wire(PingMessage()))
                    next_ping = now + self._heartbeat_interval
            except Exception:  # pylint: disable=broad-except
                logger.exception("Heartbeat sweep failed")

    @property
    def heartbeat_timeout(self) -> float:
        return self._heartbeat_interval * 2

    def next_stale_deadline(self) -> float | None:
        """Earliest time an active connection reaches the heartbeat timeout."""
        deadlines = [
            c.last_seen + self.heartbeat_timeout
            for c in self._registry.all()
            if c.state is ConnectionState.ACTIVE
        ]
        return min(deadlines, default=None)

    async def close_stale(self, now: float) -> list[str]:
        """Close active connections silent for two intervals; returns their ids."""
        stale = [
            c.id
            for c in self._registry.all()
            if c.state is ConnectionState.ACTIVE
            and self._registry.is_stale(c.id, now, self.heartbeat_timeout)
        ]
        for connection_id in stale:
            logger.info("Connection %s missed heartbeat", connection_id)
            await self.close(
                connection_id, code=CLOSE_HEARTBEAT_TIMEOUT, reason="Heartbeat timeout"
            )
        return stale

    async def shutdown(self) -> None:
        """Stop the heartbeat and close every connection with 1001."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        for connection in self._registry.all():
            await self.close(connection.id, code=CLOSE_GOING_AWAY, reason="Server shutdown")
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "connections": len(self._registry),
            "users": self._registry.user_count(),
            "topics": {
                topic.key: self._topic_index.subscriber_count(topic)
                for topic in sorted(self._topic_index.topics(), key=lambda t: t.key)
            },
        }
