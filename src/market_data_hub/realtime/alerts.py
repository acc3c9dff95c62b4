"""AlertEngine: in-memory index of armed alerts, evaluated on every poll tick.

Trigger policy is disable-on-trigger: an alert that fires is removed from the
armed set at once, reported a single time to every session of its owner, and
persisted as inactive. It fires again only after an explicit re-arm.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from market_data_hub.realtime.dispatcher import FanoutDispatcher
from market_data_hub.realtime.exceptions import AlertNotFoundError
from market_data_hub.realtime.protocols import AlertStore
from market_data_hub.realtime.topics import Topic, TopicKind
from market_data_hub.schemas import (Alert, AlertCondition, AlertKind,
                                     AlertSpec, RiskLevel, TriggeredAlert)
from market_data_hub.schemas.messages import AlertsTriggeredMessage, to_wire

logger = logging.getLogger(__name__)

# Lower is more urgent.
_RISK_PRIORITY = {
    RiskLevel.CRITICAL: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.MEDIUM: 3,
    RiskLevel.LOW: 4,
}

_OBSERVED_FIELD = {
    AlertKind.PRICE: "value",
    AlertKind.VOLUME: "volume",
    AlertKind.RISK: "risk_score",
}


def is_triggered(alert: Alert, current: float) -> bool:
    """Evaluate an alert's condition against the current observed value."""
    threshold = alert.threshold
    match alert.condition:
        case AlertCondition.ABOVE:
            return current >= threshold
        case AlertCondition.BELOW:
            return current <= threshold
        case AlertCondition.PCT_INCREASE:
            base = alert.base_price
            return bool(base) and (current - base) / base * 100 >= threshold
        case AlertCondition.PCT_DECREASE:
            base = alert.base_price
            return bool(base) and (base - current) / base * 100 >= threshold
    return False


def observed_value(alert: Alert, observation: Any) -> float | None:
    """Pick the number an alert watches out of a tick payload."""
    if isinstance(observation, (int, float)):
        return float(observation)
    if isinstance(observation, dict):
        raw = observation.get(_OBSERVED_FIELD[alert.kind])
        if isinstance(raw, (int, float)):
            return float(raw)
    return None


def risk_priority(triggered: list[TriggeredAlert]) -> int:
    return min(
        _RISK_PRIORITY[RiskLevel.from_score(t.observed_value)] for t in triggered
    )


class AlertEngine:
    """Armed alerts keyed by the topic whose ticks they watch."""

    def __init__(self, store: AlertStore, dispatcher: FanoutDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._armed: dict[int, Alert] = {}
        self._by_topic: dict[Topic, set[int]] = defaultdict(set)
        self._by_user: dict[str, set[int]] = defaultdict(set)

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    async def load(self) -> int:
        """Load every active alert from the store. Returns how many were armed."""
        alerts = await self._store.load_all()
        for alert in alerts:
            self.add(alert)
        logger.info("Loaded %d armed alerts", self.armed_count)
        return self.armed_count

    def add(self, alert: Alert) -> None:
        """Arm an alert (idempotent). Inactive alerts are ignored."""
        if not alert.active:
            return
        self.remove(alert.id)
        self._armed[alert.id] = alert
        self._by_topic[alert.scope_topic].add(alert.id)
        self._by_user[alert.user_id].add(alert.id)

    def remove(self, alert_id: int) -> Alert | None:
        alert = self._armed.pop(alert_id, None)
        if alert is None:
            return None
        for index, key in ((self._by_topic, alert.scope_topic), (self._by_user, alert.user_id)):
            ids = index.get(key)
            if ids is not None:
                ids.discard(alert_id)
                if not ids:
                    del index[key]
        return alert

    def armed_for_user(self, user_id: str) -> list[Alert]:
        return [self._armed[i] for i in sorted(self._by_user.get(user_id, ()))]

    def armed_for_topic(self, topic: Topic) -> list[Alert]:
        return [self._armed[i] for i in sorted(self._by_topic.get(topic, ()))]

    def evaluate(self, topic: Topic, value: Any, timestamp: datetime) -> list[TriggeredAlert]:
        """Return alerts triggered by this tick and disarm them.

        price and portfolio ticks check alerts scoped to that topic; alerts
        ticks carry {"observations": {topic_key: value}} for one user.
        """
        if topic.kind is TopicKind.ALERTS:
            observations = value.get("observations", {}) if isinstance(value, dict) else {}
            candidates = [
                (alert, observations.get(alert.scope_topic.key))
                for alert in self.armed_for_user(topic.scope)
            ]
        elif topic.kind in (TopicKind.PRICE, TopicKind.PORTFOLIO):
            candidates = [(alert, value) for alert in self.armed_for_topic(topic)]
        else:
            return []

        triggered: list[TriggeredAlert] = []
        for alert, observation in candidates:
            current = observed_value(alert, observation)
            if current is None or not is_triggered(alert, current):
                continue
            self.remove(alert.id)
            fired = alert.model_copy(update={"active": False, "triggered_at": timestamp})
            triggered.append(
                TriggeredAlert(alert=fired, observed_value=current, triggered_at=timestamp)
            )
        return triggered

    async def process_tick(
        self, topic: Topic, value: Any, timestamp: datetime
    ) -> list[TriggeredAlert]:
        """Evaluate a tick, notify owners, and persist the disabled alerts."""
        triggered = self.evaluate(topic, value, timestamp)
        if not triggered:
            return []

        by_user: dict[str, list[TriggeredAlert]] = defaultdict(list)
        for item in triggered:
            by_user[item.alert.user_id].append(item)
        for user_id, items in by_user.items():
            await self._notify(user_id, items)

        for item in triggered:
            try:
                await self._store.disable(item.alert.id)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Failed to persist disabled alert %s", item.alert.id)
        return triggered

    async def _notify(self, user_id: str, items: list[TriggeredAlert]) -> None:
        price_like = [t for t in items if t.alert.kind is not AlertKind.RISK]
        risk = [t for t in items if t.alert.kind is AlertKind.RISK]
        if price_like:
            message = AlertsTriggeredMessage(type="price_alerts_triggered", alerts=price_like)
            report = await self._dispatcher.notify_user(user_id, to_wire(message))
            logger.info(
                "User %s: %d price alert(s) triggered, delivered to %d session(s)",
                user_id, len(price_like), len(report.delivered),
            )
        if risk:
            message = AlertsTriggeredMessage(
                type="risk_alerts_triggered", alerts=risk, priority=risk_priority(risk)
            )
            await self._dispatcher.notify_user(user_id, to_wire(message))
            logger.info("User %s: %d risk alert(s) triggered", user_id, len(risk))

    async def create(self, user_id: str, spec: AlertSpec) -> Alert:
        """Persist a new alert and arm it without reloading the store."""
        alert = await self._store.create(user_id, spec)
        self.add(alert)
        logger.info("Alert %s created for user %s", alert.id, user_id)
        return alert

    async def rearm(self, user_id: str, alert_id: int, base_price: float | None = None) -> Alert:
        """Re-activate a triggered alert owned by user_id.

        Raises:
            AlertNotFoundError: If the alert does not exist or is not the user's.
        """
        existing = await self._store.get(alert_id)
        if existing is None or existing.user_id != user_id:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        alert = await self._store.rearm(alert_id, base_price)
        self.add(alert)
        logger.info("Alert %s re-armed for user %s", alert_id, user_id)
        return alert
