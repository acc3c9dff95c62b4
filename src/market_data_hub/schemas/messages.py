"""WebSocket protocol messages.

Incoming messages form one tagged union keyed by "type"; the gateway matches
on the parsed model class. Outgoing messages are dumped with to_wire().
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from market_data_hub.schemas.alerts import Alert, AlertSpec, TriggeredAlert


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Incoming ----
class SubscriptionOptions(BaseModel):
    """Kind-specific options; unknown keys are ignored."""

    interval: float | None = Field(default=None, ge=1.0, le=3600.0)
    depth: int | None = Field(default=None, ge=1, le=100)


class AuthenticateMessage(BaseModel):
    type: Literal["authenticate"]
    token: str = Field(min_length=1)


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"]
    topics: list[str] = Field(min_length=1)
    options: SubscriptionOptions | None = None


class UnsubscribeMessage(BaseModel):
    type: Literal["unsubscribe"]
    topics: list[str] = Field(min_length=1)


class SetupAlertMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setup_alert"]
    alert_spec: AlertSpec = Field(alias="alertSpec")


class RearmAlertMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["rearm_alert"]
    alert_id: int = Field(alias="alertId")
    base_price: float | None = Field(default=None, gt=0, alias="basePrice")


class PongMessage(BaseModel):
    type: Literal["pong"]


ClientMessage = Annotated[
    Union[
        AuthenticateMessage,
        SubscribeMessage,
        UnsubscribeMessage,
        SetupAlertMessage,
        RearmAlertMessage,
        PongMessage,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


# ---- Outgoing ----
class ConnectionMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["connection"] = "connection"
    status: str = "connected"
    client_id: str = Field(alias="clientId")
    user_id: str = Field(alias="userId")


class SubscriptionSuccessMessage(BaseModel):
    type: Literal["subscription_success"] = "subscription_success"
    topics: list[str]


class UnsubscriptionSuccessMessage(BaseModel):
    type: Literal["unsubscription_success"] = "unsubscription_success"
    topics: list[str]


class TopicUpdateMessage(BaseModel):
    """Pushed on every successful poll tick, e.g. type="price_update"."""

    type: str
    topic: str
    data: Any
    timestamp: datetime


class AlertsTriggeredMessage(BaseModel):
    type: Literal["price_alerts_triggered", "risk_alerts_triggered"]
    alerts: list[TriggeredAlert]
    priority: int | None = None


class AlertCreatedMessage(BaseModel):
    type: Literal["alert_created"] = "alert_created"
    alert: Alert


class AlertRearmedMessage(BaseModel):
    type: Literal["alert_rearmed"] = "alert_rearmed"
    alert: Alert


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"
    timestamp: datetime = Field(default_factory=_utcnow)


def to_wire(message: BaseModel) -> dict[str, Any]:
    """JSON-ready dict with camelCase aliases where defined and no null fields."""
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)
