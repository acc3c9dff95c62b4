"""Real-time push endpoint and its status view."""
from typing import Any

from dependency_injector.wiring import inject
from fastapi import APIRouter, WebSocket

from market_data_hub.container import GatewayWs, HubDep

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, gateway: GatewayWs) -> None:
    """Subscribe to price, orderbook, trades, market, portfolio and alert topics.

    Authenticate with `?token=...`, an `Authorization: Bearer` header, or an
    `{"type": "authenticate", "token": ...}` first message.
    """
    await gateway.serve(websocket)


@router.get("/realtime/status")
@inject
async def realtime_status(hub: HubDep) -> dict[str, Any]:
    """Connection, topic, polling and armed-alert counts."""
    return hub.status()
