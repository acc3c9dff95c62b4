"""DI container. Wire via init_container(); endpoints use Depends(Provide[Container.*])."""
from typing import Annotated

from dependency_injector import containers, providers
from dependency_injector.wiring import Provide
from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from market_data_hub.config import Settings
from market_data_hub.db import make_engine
from market_data_hub.providers import (CoinCapProvider, CoinGeckoProvider,
                                       CryptoCompareProvider)
from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.dispatcher import FanoutDispatcher
from market_data_hub.realtime.exceptions import AuthError
from market_data_hub.realtime.fetcher import TopicFetcher
from market_data_hub.realtime.gateway import SubscriptionGateway
from market_data_hub.realtime.hub import RealtimeHub
from market_data_hub.realtime.protocols import AuthenticatedUser
from market_data_hub.realtime.registry import ConnectionRegistry
from market_data_hub.realtime.scheduler import PollingScheduler
from market_data_hub.realtime.topic_index import TopicIndex
from market_data_hub.services import (HoldingsPortfolioSource,
                                      JwtAuthValidator, MarketDataRouter,
                                      SqlAlertStore)


class Container(containers.DeclarativeContainer):
    wiring_config = containers.WiringConfiguration(
        modules=[
            "market_data_hub.routers.alerts",
            "market_data_hub.routers.crypto",
            "market_data_hub.routers.portfolio",
            "market_data_hub.routers.realtime",
        ]
    )

    settings = providers.Singleton(Settings)

    db_engine = providers.Singleton(
        make_engine,
        settings.provided.database_url,
        echo=settings.provided.sql_echo,
    )

    # Upstream providers
    coingecko_provider = providers.Singleton(
        CoinGeckoProvider, api_key=settings.provided.coingecko_api_key
    )
    cryptocompare_provider = providers.Singleton(
        CryptoCompareProvider, api_key=settings.provided.cryptocompare_api_key
    )
    coincap_provider = providers.Singleton(
        CoinCapProvider, api_key=settings.provided.coincap_api_key
    )

    # Collaborators
    market_data = providers.Singleton(
        MarketDataRouter,
        coingecko=coingecko_provider,
        cryptocompare=cryptocompare_provider,
        coincap=coincap_provider,
    )
    alert_store = providers.Singleton(SqlAlertStore, engine=db_engine)
    portfolio_source = providers.Singleton(
        HoldingsPortfolioSource, engine=db_engine, market_data=market_data
    )
    auth_validator = providers.Singleton(
        JwtAuthValidator,
        secret_key=settings.provided.jwt_secret,
        algorithm=settings.provided.jwt_algorithm,
    )

    # Real-time layer
    connection_registry = providers.Singleton(
        ConnectionRegistry, strict=settings.provided.strict_registry
    )
    topic_index = providers.Singleton(TopicIndex)
    dispatcher = providers.Singleton(
        FanoutDispatcher,
        connection_registry,
        topic_index,
        send_timeout=settings.provided.send_timeout,
    )
    alert_engine = providers.Singleton(AlertEngine, store=alert_store, dispatcher=dispatcher)
    topic_fetcher = providers.Singleton(
        TopicFetcher,
        market_data=market_data,
        portfolio=portfolio_source,
        alert_engine=alert_engine,
    )
    scheduler = providers.Singleton(
        PollingScheduler,
        fetcher=topic_fetcher,
        dispatcher=dispatcher,
        alert_engine=alert_engine,
        cadences=settings.provided.cadences,
        fetch_timeout=settings.provided.fetch_timeout,
        backoff_threshold=settings.provided.backoff_threshold,
        backoff_factor=settings.provided.backoff_factor,
        backoff_max_interval=settings.provided.backoff_max_interval,
    )
    gateway = providers.Singleton(
        SubscriptionGateway,
        registry=connection_registry,
        topic_index=topic_index,
        scheduler=scheduler,
        dispatcher=dispatcher,
        alert_engine=alert_engine,
        auth_validator=auth_validator,
        heartbeat_interval=settings.provided.heartbeat_interval,
        auth_timeout=settings.provided.auth_timeout,
    )
    hub = providers.Singleton(
        RealtimeHub,
        gateway=gateway,
        scheduler=scheduler,
        alert_engine=alert_engine,
        engine=db_engine,
    )


# Type aliases for route injection (avoid repeating Annotated[...] in every route)
AlertEngineDep = Annotated[AlertEngine, Depends(Provide[Container.alert_engine])]
AlertStoreDep = Annotated[SqlAlertStore, Depends(Provide[Container.alert_store])]
MarketDataDep = Annotated[MarketDataRouter, Depends(Provide[Container.market_data])]
PortfolioDep = Annotated[
    HoldingsPortfolioSource, Depends(Provide[Container.portfolio_source])
]
HubDep = Annotated[RealtimeHub, Depends(Provide[Container.hub])]


def init_container() -> Container:
    """Create container and wire to router modules."""
    container = Container()
    container.wire()
    return container


_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> AuthenticatedUser:
    """Resolve the bearer token of a REST request to its user (401 otherwise)."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    validator: JwtAuthValidator = request.app.state.container.auth_validator()
    try:
        return validator.validate_token(credentials.credentials)
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def get_gateway_ws(websocket: WebSocket) -> SubscriptionGateway:
    return websocket.scope["app"].state.container.gateway()


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
GatewayWs = Annotated[SubscriptionGateway, Depends(get_gateway_ws)]
