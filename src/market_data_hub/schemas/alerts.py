"""Alert rules and trigger results."""
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from market_data_hub.realtime.topics import Topic, portfolio_topic, price_topic


class AlertKind(str, Enum):
    PRICE = "PRICE"
    RISK = "RISK"
    VOLUME = "VOLUME"


class AlertCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    PCT_INCREASE = "pct_increase"
    PCT_DECREASE = "pct_decrease"

    @property
    def is_relative(self) -> bool:
        return self in (AlertCondition.PCT_INCREASE, AlertCondition.PCT_DECREASE)


class AlertSpec(BaseModel):
    """Client-supplied alert definition (setup_alert / POST /alerts)."""

    model_config = ConfigDict(populate_by_name=True)

    kind: AlertKind = AlertKind.PRICE
    symbol: str | None = None
    condition: AlertCondition
    threshold: float = Field(gt=0)
    base_price: float | None = Field(default=None, gt=0, alias="basePrice")

    @model_validator(mode="after")
    def _check_scope(self) -> "AlertSpec":
        if self.kind is AlertKind.RISK:
            self.symbol = None
        else:
            if not self.symbol or not self.symbol.strip():
                raise ValueError(f"{self.kind.value} alerts require a symbol")
            self.symbol = self.symbol.strip().upper()
        if self.condition.is_relative and self.base_price is None:
            raise ValueError(f"Condition '{self.condition.value}' requires basePrice")
        return self


class Alert(BaseModel):
    """A persisted alert rule."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    kind: AlertKind
    symbol: str | None = None
    condition: AlertCondition
    threshold: float
    base_price: float | None = None
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    triggered_at: datetime | None = None

    @property
    def scope_topic(self) -> Topic:
        """Topic whose ticks carry the value this alert watches."""
        if self.kind is AlertKind.RISK:
            return portfolio_topic(self.user_id)
        return price_topic(self.symbol or "")


class TriggeredAlert(BaseModel):
    alert: Alert
    observed_value: float
    triggered_at: datetime
