"""ConnectionRegistry: the single owner of "who is connected"."""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from market_data_hub.realtime.exceptions import (AlreadyAuthenticatedError,
                                                 ConnectionNotFoundError,
                                                 DuplicateConnectionError,
                                                 RegistryError)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the real-time layer needs from a socket (FastAPI WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


def new_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex[:16]}"


@dataclass(eq=False)
class Connection:
    """One physical transport session."""

    transport: Transport
    id: str = field(default_factory=new_connection_id)
    user_id: str | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    alive: bool = True
    last_seen: float = field(default_factory=time.monotonic)
    connected_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    # Serializes sends so one connection sees messages in call order.
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_deliverable(self) -> bool:
        return self.alive and self.state is ConnectionState.ACTIVE


class ConnectionRegistry:
    """Tracks live connections by id and by owning user.

    When strict is True, invariant violations raise; otherwise they are logged
    and ignored so a bug in one code path cannot take the process down.
    """

    def __init__(self, *, strict: bool = True) -> None:
        self._strict = strict
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def _violation(self, error: RegistryError) -> None:
        if self._strict:
            raise error
        logger.error("Connection registry invariant violated: %s", error)

    def register(self, connection: Connection) -> None:
        if connection.id in self._connections:
            self._violation(
                DuplicateConnectionError(f"Connection {connection.id} already registered")
            )
            return
        self._connections[connection.id] = connection
        logger.debug("Registered connection %s (total=%d)", connection.id, len(self))

    def attach_user(self, connection_id: str, user_id: str) -> None:
        """Bind an authenticated user to a connection. Call once per connection."""
        connection = self._connections.get(connection_id)
        if connection is None:
            self._violation(ConnectionNotFoundError(f"Unknown connection {connection_id}"))
            return
        if connection.user_id is not None:
            self._violation(
                AlreadyAuthenticatedError(f"Connection {connection_id} already authenticated")
            )
            return
        connection.user_id = user_id
        self._by_user.setdefault(user_id, set()).add(connection_id)

    def remove(self, connection_id: str) -> Connection | None:
        """Remove and return the connection; None if it was not registered."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        if connection.user_id is not None:
            sessions = self._by_user.get(connection.user_id)
            if sessions is not None:
                sessions.discard(connection_id)
                if not sessions:
                    del self._by_user[connection.user_id]
        logger.debug("Removed connection %s (total=%d)", connection_id, len(self))
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def all(self) -> list[Connection]:
        return list(self._connections.values())

    def connections_for_user(self, user_id: str) -> set[str]:
        """Every live session of a user (tabs, devices)."""
        return set(self._by_user.get(user_id, ()))

    def user_count(self) -> int:
        return len(self._by_user)

    def mark_alive(self, connection_id: str, now: float | None = None) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.alive = True
        connection.last_seen = time.monotonic() if now is None else now

    def mark_dead(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.alive = False

    def is_stale(self, connection_id: str, now: float, timeout: float) -> bool:
        """True when the connection has been silent for at least timeout.

        Unknown connections count as stale.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return True
        return now - connection.last_seen >= timeout
