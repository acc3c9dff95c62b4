"""Alert management over HTTP, same bearer token as the WebSocket."""
from dependency_injector.wiring import inject
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from market_data_hub.container import AlertEngineDep, AlertStoreDep, CurrentUser
from market_data_hub.realtime.exceptions import AlertNotFoundError
from market_data_hub.schemas import Alert, AlertSpec

router = APIRouter(prefix="/alerts", tags=["alerts"])


class RearmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base_price: float | None = Field(default=None, gt=0, alias="basePrice")


@router.post("", response_model=Alert, status_code=status.HTTP_201_CREATED)
@inject
async def create_alert(
    spec: AlertSpec, user: CurrentUser, alert_engine: AlertEngineDep
) -> Alert:
    """Create an alert and arm it immediately."""
    return await alert_engine.create(user.user_id, spec)


@router.get("", response_model=list[Alert])
@inject
async def list_alerts(user: CurrentUser, alert_store: AlertStoreDep) -> list[Alert]:
    """All alerts of the caller, armed or triggered."""
    return await alert_store.list_for_user(user.user_id)


@router.post("/{alert_id}/rearm", response_model=Alert)
@inject
async def rearm_alert(
    alert_id: int,
    user: CurrentUser,
    alert_engine: AlertEngineDep,
    body: RearmRequest | None = None,
) -> Alert:
    """Re-activate a triggered alert, optionally with a new base price."""
    try:
        return await alert_engine.rearm(
            user.user_id, alert_id, body.base_price if body else None
        )
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
