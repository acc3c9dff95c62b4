"""Shared pytest fixtures and fakes for the real-time layer."""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import pytest_asyncio

from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.dispatcher import FanoutDispatcher
from market_data_hub.realtime.exceptions import (AlertNotFoundError, AuthError,
                                                 FetchError)
from market_data_hub.realtime.fetcher import TopicFetcher
from market_data_hub.realtime.gateway import SubscriptionGateway
from market_data_hub.realtime.protocols import AuthenticatedUser
from market_data_hub.realtime.registry import ConnectionRegistry
from market_data_hub.realtime.scheduler import PollingScheduler, Sleep
from market_data_hub.realtime.topic_index import TopicIndex
from market_data_hub.realtime.topics import TopicKind
from market_data_hub.schemas import Alert, AlertSpec, PortfolioSummary


class FakeTransport:
    """Records what the server sends; can be told to fail or stall sends."""

    def __init__(self, *, fail_sends: bool = False, send_delay: float = 0.0) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_sends = fail_sends
        self.send_delay = send_delay
        self.close_code: int | None = None
        self.close_calls = 0

    async def send_json(self, data: Any) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls += 1
        self.close_code = code

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]


class FakeAuth:
    """Accepts tokens of the form "token-<user>"."""

    def validate_token(self, token: str) -> AuthenticatedUser:
        if not token.startswith("token-"):
            raise AuthError("Invalid token")
        return AuthenticatedUser(user_id=token.removeprefix("token-"))


class FakeMarketData:
    """MarketDataSource returning canned JSON values per (kind, scope)."""

    def __init__(self) -> None:
        self.values: dict[tuple[TopicKind, str], Any] = {}
        self.failing: set[tuple[TopicKind, str]] = set()
        self.calls: list[tuple[TopicKind, str, int | None]] = []

    def set_price(self, symbol: str, value: float, volume: float | None = None) -> None:
        self.values[(TopicKind.PRICE, symbol)] = {
            "source": "coingecko",
            "symbol": symbol,
            "value": value,
            "volume": volume,
        }

    async def fetch(self, kind: TopicKind, scope: str, *, depth: int | None = None) -> Any:
        self.calls.append((kind, scope, depth))
        if (kind, scope) in self.failing:
            raise FetchError(f"upstream down for {scope}")
        if (kind, scope) in self.values:
            return self.values[(kind, scope)]
        return {"symbol": scope, "kind": kind.value}

    async def close(self) -> None:
        pass


class FakePortfolio:
    def __init__(self) -> None:
        self.risk_scores: dict[str, float] = {}

    async def snapshot(self, user_id: str) -> PortfolioSummary:
        return PortfolioSummary(user_id=user_id, risk_score=self.risk_scores.get(user_id, 0.0))


class InMemoryAlertStore:
    """AlertStore kept in a dict; records disable calls."""

    def __init__(self, alerts: list[Alert] | None = None) -> None:
        self.alerts: dict[int, Alert] = {a.id: a for a in alerts or []}
        self.disabled: list[int] = []
        self.fail_create = False
        self.fail_rearm = False

    async def load_all(self) -> list[Alert]:
        return [a for a in self.alerts.values() if a.active]

    async def create(self, user_id: str, spec: AlertSpec) -> Alert:
        if self.fail_create:
            raise RuntimeError("database is locked")
        alert = Alert(
            id=max(self.alerts, default=0) + 1,
            user_id=user_id,
            kind=spec.kind,
            symbol=spec.symbol,
            condition=spec.condition,
            threshold=spec.threshold,
            base_price=spec.base_price,
        )
        self.alerts[alert.id] = alert
        return alert

    async def disable(self, alert_id: int) -> None:
        self.disabled.append(alert_id)
        alert = self.alerts[alert_id]
        self.alerts[alert_id] = alert.model_copy(
            update={"active": False, "triggered_at": datetime.now(timezone.utc)}
        )

    async def rearm(self, alert_id: int, base_price: float | None = None) -> Alert:
        if self.fail_rearm:
            raise RuntimeError("database is locked")
        if alert_id not in self.alerts:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        update: dict[str, Any] = {"active": True, "triggered_at": None}
        if base_price is not None:
            update["base_price"] = base_price
        self.alerts[alert_id] = self.alerts[alert_id].model_copy(update=update)
        return self.alerts[alert_id]

    async def get(self, alert_id: int) -> Alert | None:
        return self.alerts.get(alert_id)

    async def list_for_user(self, user_id: str) -> list[Alert]:
        return [a for a in self.alerts.values() if a.user_id == user_id]


class RecordingSleep:
    """Stand-in for asyncio.sleep: records delays, parks the loop after `limit` calls."""

    def __init__(self, limit: int = 1) -> None:
        self.calls: list[float] = []
        self.limit = limit
        self.reached = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if len(self.calls) >= self.limit:
            self.reached.set()
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    async def wait(self, timeout: float = 2.0) -> None:
        await asyncio.wait_for(self.reached.wait(), timeout=timeout)


class ManualSleep:
    """Stand-in for asyncio.sleep that returns only when the test releases it."""

    def __init__(self) -> None:
        self.requests: asyncio.Queue[tuple[float, asyncio.Future]] = asyncio.Queue()

    async def __call__(self, seconds: float) -> None:
        waiter = asyncio.get_running_loop().create_future()
        await self.requests.put((seconds, waiter))
        await waiter

    async def next(self, timeout: float = 1.0) -> tuple[float, asyncio.Future]:
        """Wait for the next sleep call; returns (delay, future to resolve)."""
        return await asyncio.wait_for(self.requests.get(), timeout=timeout)


@dataclass
class Components:
    registry: ConnectionRegistry
    topic_index: TopicIndex
    dispatcher: FanoutDispatcher
    store: InMemoryAlertStore
    alert_engine: AlertEngine
    market_data: FakeMarketData
    portfolio: FakePortfolio
    scheduler: PollingScheduler
    gateway: SubscriptionGateway
    sleep: RecordingSleep
    clock: list[float] = field(default_factory=lambda: [0.0])

    async def connect(self, user_id: str, **transport_kwargs: Any) -> tuple[str, FakeTransport]:
        """Open and authenticate a connection; returns (connection id, transport)."""
        transport = FakeTransport(**transport_kwargs)
        connection = self.gateway.open(transport)
        assert await self.gateway.authenticate(connection.id, f"token-{user_id}")
        return connection.id, transport

    async def aclose(self) -> None:
        await self.gateway.shutdown()
        await self.scheduler.stop_all()


def make_components(
    *,
    alerts: list[Alert] | None = None,
    sleep_limit: int = 1,
    send_timeout: float = 0.5,
    heartbeat_interval: float = 30.0,
    heartbeat_sleep: Sleep = asyncio.sleep,
) -> Components:
    registry = ConnectionRegistry(strict=True)
    topic_index = TopicIndex()
    dispatcher = FanoutDispatcher(registry, topic_index, send_timeout=send_timeout)
    store = InMemoryAlertStore(alerts)
    alert_engine = AlertEngine(store, dispatcher)
    market_data = FakeMarketData()
    portfolio = FakePortfolio()
    sleep = RecordingSleep(limit=sleep_limit)
    scheduler = PollingScheduler(
        TopicFetcher(market_data, portfolio, alert_engine),
        dispatcher,
        alert_engine,
        sleep=sleep,
    )
    clock = [0.0]
    gateway = SubscriptionGateway(
        registry,
        topic_index,
        scheduler,
        dispatcher,
        alert_engine,
        FakeAuth(),
        heartbeat_interval=heartbeat_interval,
        clock=lambda: clock[0],
        sleep=heartbeat_sleep,
    )
    return Components(
        registry=registry,
        topic_index=topic_index,
        dispatcher=dispatcher,
        store=store,
        alert_engine=alert_engine,
        market_data=market_data,
        portfolio=portfolio,
        scheduler=scheduler,
        gateway=gateway,
        sleep=sleep,
        clock=clock,
    )


def make_alert(alert_id: int = 1, user_id: str = "alice", **overrides: Any) -> Alert:
    fields: dict[str, Any] = {
        "id": alert_id,
        "user_id": user_id,
        "kind": "PRICE",
        "symbol": "BTC",
        "condition": "above",
        "threshold": 50000.0,
    }
    fields.update(overrides)
    return Alert(**fields)


@pytest_asyncio.fixture
async def parts():
    """Wired real-time components over fakes; closed after the test."""
    components = make_components()
    yield components
    await components.aclose()


