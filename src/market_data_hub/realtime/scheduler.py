"""PollingScheduler: one recurring poll task per topic with subscribers."""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.dispatcher import FanoutDispatcher
from market_data_hub.realtime.exceptions import FetchError
from market_data_hub.realtime.topics import DEFAULT_CADENCES, Topic, TopicKind
from market_data_hub.schemas.messages import TopicUpdateMessage, to_wire

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class TickFetcher(Protocol):
    async def fetch(self, topic: Topic) -> Any:
        """Return the JSON-ready value for one tick. Raises FetchError."""
        ...


@dataclass
class _TopicTimer:
    topic: Topic
    nominal_interval: float
    interval: float
    failures: int = 0
    skipped: int = 0
    task: asyncio.Task | None = None


class PollingScheduler:
    """Runs the poll loop of every subscribed topic.

    Each topic has its own task: fetch, evaluate alerts, publish, sleep.
    A tick that comes due while the previous fetch is still in flight is
    skipped. After backoff_threshold consecutive failures the interval is
    multiplied by backoff_factor on every further failure, up to
    backoff_max_interval; one success restores the nominal interval.
    """

    def __init__(
        self,
        fetcher: TickFetcher,
        dispatcher: FanoutDispatcher,
        alert_engine: AlertEngine,
        *,
        cadences: dict[TopicKind, float] | None = None,
        fetch_timeout: float = 10.0,
        backoff_threshold: int = 3,
        backoff_factor: float = 2.0,
        backoff_max_interval: float = 120.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._dispatcher = dispatcher
        self._alert_engine = alert_engine
        self._cadences = {**DEFAULT_CADENCES, **(cadences or {})}
        self._fetch_timeout = fetch_timeout
        self._backoff_threshold = backoff_threshold
        self._backoff_factor = backoff_factor
        self._backoff_max_interval = backoff_max_interval
        self._sleep = sleep
        self._timers: dict[Topic, _TopicTimer] = {}

    def cadence_for(self, kind: TopicKind) -> float:
        return self._cadences[kind]

    def start(self, topic: Topic, interval: float | None = None) -> bool:
        """Start polling topic. Returns False if it was already running."""
        if topic in self._timers:
            return False
        nominal = interval or self.cadence_for(topic.kind)
        timer = _TopicTimer(topic=topic, nominal_interval=nominal, interval=nominal)
        self._timers[topic] = timer
        timer.task = asyncio.create_task(self._run(timer), name=f"poll:{topic.key}")
        logger.info("Started polling %s every %.1fs", topic, nominal)
        return True

    def stop(self, topic: Topic) -> bool:
        """Cancel the poll task of topic. No-op (False) if it is not running."""
        timer = self._timers.pop(topic, None)
        if timer is None:
            return False
        if timer.task is not None:
            timer.task.cancel()
        logger.info("Stopped polling %s", topic)
        return True

    async def stop_all(self) -> None:
        tasks = [t.task for t in self._timers.values() if t.task is not None]
        for topic in list(self._timers):
            self.stop(topic)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_running(self, topic: Topic) -> bool:
        return topic in self._timers

    def running_topics(self) -> set[Topic]:
        return set(self._timers)

    def current_interval(self, topic: Topic) -> float | None:
        timer = self._timers.get(topic)
        return None if timer is None else timer.interval

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            timer.topic.key: {
                "interval": timer.interval,
                "nominal_interval": timer.nominal_interval,
                "consecutive_failures": timer.failures,
                "skipped_ticks": timer.skipped,
            }
            for timer in self._timers.values()
        }

    async def _run(self, timer: _TopicTimer) -> None:
        while True:
            fetch = asyncio.ensure_future(self._tick(timer))
            try:
                while not fetch.done():
                    done, _ = await asyncio.wait({fetch}, timeout=timer.interval)
                    if not done:
                        timer.skipped += 1
                        logger.debug("Skipping tick for %s: fetch still in flight", timer.topic)
            finally:
                if not fetch.done():
                    fetch.cancel()
            await self._sleep(timer.interval)

    async def _tick(self, timer: _TopicTimer) -> None:
        topic = timer.topic
        try:
            value = await asyncio.wait_for(
                self._fetcher.fetch(topic), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            self._record_failure(timer, f"timed out after {self._fetch_timeout}s")
            return
        except FetchError as exc:
            self._record_failure(timer, str(exc))
            return
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error fetching %s", topic)
            self._record_failure(timer, f"{type(exc).__name__}: {exc}")
            return

        self._record_success(timer)
        timestamp = datetime.now(timezone.utc)
        try:
            await self._alert_engine.process_tick(topic, value, timestamp)
            message = TopicUpdateMessage(
                type=topic.update_type, topic=topic.key, data=value, timestamp=timestamp
            )
            await self._dispatcher.publish(topic, to_wire(message))
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to deliver tick for %s", topic)

    def _record_failure(self, timer: _TopicTimer, reason: str) -> None:
        timer.failures += 1
        if timer.failures >= self._backoff_threshold:
            ceiling = max(self._backoff_max_interval, timer.nominal_interval)
            timer.interval = min(timer.interval * self._backoff_factor, ceiling)
        logger.warning(
            "Fetch for %s failed (%d consecutive): %s; next poll in %.1fs",
            timer.topic, timer.failures, reason, timer.interval,
        )

    def _record_success(self, timer: _TopicTimer) -> None:
        if timer.failures >= self._backoff_threshold:
            logger.info("Fetch for %s recovered; back to %.1fs", timer.topic, timer.nominal_interval)
        timer.failures = 0
        timer.interval = timer.nominal_interval
