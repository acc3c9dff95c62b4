"""Portfolio holdings over HTTP; the portfolio:<user> topic streams the same summary."""
from dependency_injector.wiring import inject
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from market_data_hub.container import CurrentUser, PortfolioDep
from market_data_hub.db import HoldingRecord
from market_data_hub.realtime.exceptions import FetchError
from market_data_hub.schemas import PortfolioSummary

router = APIRouter(prefix="/portfolio", tags=["portfolio"])


class HoldingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    quantity: float = Field(ge=0)
    average_price: float = Field(ge=0, alias="averagePrice")


@router.get("", response_model=PortfolioSummary)
@inject
async def get_portfolio(user: CurrentUser, portfolio: PortfolioDep) -> PortfolioSummary:
    """Value, profit/loss and risk score of the caller's holdings at current prices."""
    try:
        return await portfolio.snapshot(user.user_id)
    except FetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.put("/holdings/{symbol}", response_model=HoldingRecord)
@inject
async def set_holding(
    symbol: str, body: HoldingRequest, user: CurrentUser, portfolio: PortfolioDep
) -> HoldingRecord:
    """Create or replace the caller's position in one asset."""
    return await portfolio.set_holding(
        user.user_id, symbol, body.quantity, body.average_price
    )
