"""Main module for the market data hub service."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from market_data_hub.config import configure_logging
from market_data_hub.container import Container, init_container
from market_data_hub.routers import (alerts_router, crypto_router,
                                     portfolio_router, realtime_router)

logger = logging.getLogger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """Build the app around a container (composition root).

    Tests pass a container with overridden providers.
    """
    container = container or init_container()
    settings = container.settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Start the real-time layer at startup; stop it and close providers on shutdown."""
        hub = fastapi_app.state.container.hub()
        await hub.start()

        yield

        await hub.stop()
        # Close provider resources (httpx clients)
        await fastapi_app.state.container.market_data().close()

    fastapi_app = FastAPI(
        title="Market Data Hub",
        description="Crypto market data with real-time topic subscriptions and alerts",
        version="0.1.0",
        lifespan=lifespan,
    )
    fastapi_app.state.container = container

    fastapi_app.include_router(realtime_router)
    fastapi_app.include_router(alerts_router)
    fastapi_app.include_router(crypto_router)
    fastapi_app.include_router(portfolio_router)

    @fastapi_app.get("/")
    def health():
        """Return health check status."""
        return {"status": "ok"}

    return fastapi_app


app = create_app()


def run():
    """Run the server (uvicorn). Use for `poetry run start`."""
    settings = app.state.container.settings()
    uvicorn.run("market_data_hub.main:app", host=settings.host, port=settings.port)
