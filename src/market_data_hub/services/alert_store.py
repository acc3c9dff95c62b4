"""SqlAlertStore: alert persistence over SQLModel.

Sessions are synchronous; every method runs its unit of work in a worker
thread so the event loop never blocks on the database.
"""
import asyncio
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlmodel import select

from market_data_hub.db import AlertRecord, get_session
from market_data_hub.realtime.exceptions import AlertNotFoundError
from market_data_hub.schemas import Alert, AlertSpec


def _to_alert(record: AlertRecord) -> Alert:
    return Alert.model_validate(record)


class SqlAlertStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def load_all(self) -> list[Alert]:
        """Every active alert."""
        return await asyncio.to_thread(self._load_active)

    async def create(self, user_id: str, spec: AlertSpec) -> Alert:
        return await asyncio.to_thread(self._create, user_id, spec)

    async def disable(self, alert_id: int) -> None:
        await asyncio.to_thread(self._disable, alert_id)

    async def rearm(self, alert_id: int, base_price: float | None = None) -> Alert:
        """Re-activate an alert. Raises AlertNotFoundError if it does not exist."""
        return await asyncio.to_thread(self._rearm, alert_id, base_price)

    async def get(self, alert_id: int) -> Alert | None:
        return await asyncio.to_thread(self._get, alert_id)

    async def list_for_user(self, user_id: str) -> list[Alert]:
        return await asyncio.to_thread(self._list_for_user, user_id)

    def _load_active(self) -> list[Alert]:
        with get_session(self._engine) as session:
            rows = session.exec(select(AlertRecord).where(AlertRecord.active == True))  # noqa: E712
            return [_to_alert(r) for r in rows.all()]

    def _create(self, user_id: str, spec: AlertSpec) -> Alert:
        record = AlertRecord(
            user_id=user_id,
            kind=spec.kind.value,
            symbol=spec.symbol,
            condition=spec.condition.value,
            threshold=spec.threshold,
            base_price=spec.base_price,
        )
        with get_session(self._engine) as session:
            session.add(record)
            session.flush()
            session.refresh(record)
            return _to_alert(record)

    def _disable(self, alert_id: int) -> None:
        with get_session(self._engine) as session:
            record = session.get(AlertRecord, alert_id)
            if record is None:
                return
            record.active = False
            record.triggered_at = datetime.now(timezone.utc)
            session.add(record)

    def _rearm(self, alert_id: int, base_price: float | None) -> Alert:
        with get_session(self._engine) as session:
            record = session.get(AlertRecord, alert_id)
            if record is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            record.active = True
            record.triggered_at = None
            if base_price is not None:
                record.base_price = base_price
            session.add(record)
            session.flush()
            session.refresh(record)
            return _to_alert(record)

    def _get(self, alert_id: int) -> Alert | None:
        with get_session(self._engine) as session:
            record = session.get(AlertRecord, alert_id)
            return None if record is None else _to_alert(record)

    def _list_for_user(self, user_id: str) -> list[Alert]:
        with get_session(self._engine) as session:
            rows = session.exec(
                select(AlertRecord)
                .where(AlertRecord.user_id == user_id)
                .order_by(AlertRecord.id)
            )
            return [_to_alert(r) for r in rows.all()]
