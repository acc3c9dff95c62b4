"""RealtimeHub: start/stop of the real-time layer as one unit."""
import asyncio
import logging
from typing import Any

from sqlalchemy.engine import Engine

from market_data_hub.db import init_db
from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.gateway import SubscriptionGateway
from market_data_hub.realtime.scheduler import PollingScheduler

logger = logging.getLogger(__name__)


class RealtimeHub:
    def __init__(
        self,
        gateway: SubscriptionGateway,
        scheduler: PollingScheduler,
        alert_engine: AlertEngine,
        engine: Engine | None = None,
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.alert_engine = alert_engine
        self._engine = engine
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Create tables, arm stored alerts and start the heartbeat."""
        if self._started:
            return
        if self._engine is not None:
            await asyncio.to_thread(init_db, self._engine)
        await self.alert_engine.load()
        self.gateway.start_heartbeat()
        self._started = True
        logger.info("Real-time layer started")

    async def stop(self) -> None:
        """Close every connection and stop every poll task."""
        if not self._started:
            return
        await self.gateway.shutdown()
        await self.scheduler.stop_all()
        self._started = False
        logger.info("Real-time layer stopped")

    def status(self) -> dict[str, Any]:
        return {
            **self.gateway.status(),
            "polling": self.scheduler.status(),
            "armed_alerts": self.alert_engine.armed_count,
        }
