"""Exceptions raised by the real-time layer.

Each error is local to one connection or one topic; callers catch it at that
boundary so a failure never spreads to other connections or topics.
"""


class RealtimeError(Exception):
    """Base class for real-time layer errors."""


class AuthError(RealtimeError):
    """Missing, malformed, or expired credential."""


class MessageValidationError(RealtimeError):
    """Malformed or unauthorized client message. Replied to as an `error`."""


class FetchError(RealtimeError):
    """Upstream market data fetch failed or timed out."""

    def __init__(self, message: str, *, topic: str | None = None) -> None:
        super().__init__(message)
        self.topic = topic


class DeliveryError(RealtimeError):
    """A send to a single connection failed."""

    def __init__(self, connection_id: str, message: str) -> None:
        super().__init__(message)
        self.connection_id = connection_id


class RegistryError(RealtimeError):
    """Registry invariant violation (a programming error)."""


class DuplicateConnectionError(RegistryError):
    """A connection id was registered twice."""


class ConnectionNotFoundError(RegistryError):
    """The connection id is not registered."""


class AlreadyAuthenticatedError(RegistryError):
    """attach_user was called twice for the same connection."""


class AlertNotFoundError(RealtimeError):
    """The alert does not exist or belongs to another user."""
