"""Runtime configuration loaded from environment variables (and an optional .env)."""
import logging

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from market_data_hub.realtime.topics import DEFAULT_CADENCES, TopicKind


class Settings(BaseSettings):
    """Application settings.

    Field names map to upper-case environment variables (DATABASE_URL,
    JWT_SECRET, ...); the aliases below cover the names that differ.
    Tests construct Settings(...) directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field(
        default="development", validation_alias=AliasChoices("APP_ENV", "environment")
    )
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8001

    database_url: str = "sqlite:///./market_data_hub.db"
    sql_echo: bool = False

    jwt_secret: str = "dev-only-insecure-key"
    jwt_algorithm: str = "HS256"

    coingecko_api_key: str | None = None
    cryptocompare_api_key: str | None = None
    coincap_api_key: str | None = None

    # Seconds between polls per topic kind (POLL_INTERVAL_PRICE, ...)
    poll_interval_price: float = DEFAULT_CADENCES[TopicKind.PRICE]
    poll_interval_orderbook: float = DEFAULT_CADENCES[TopicKind.ORDERBOOK]
    poll_interval_trades: float = DEFAULT_CADENCES[TopicKind.TRADES]
    poll_interval_market: float = DEFAULT_CADENCES[TopicKind.MARKET]
    poll_interval_portfolio: float = DEFAULT_CADENCES[TopicKind.PORTFOLIO]
    poll_interval_alerts: float = DEFAULT_CADENCES[TopicKind.ALERTS]

    heartbeat_interval: float = Field(
        default=30.0,
        validation_alias=AliasChoices("HEARTBEAT_INTERVAL_SECONDS", "heartbeat_interval"),
    )
    auth_timeout: float = Field(
        default=10.0, validation_alias=AliasChoices("AUTH_TIMEOUT_SECONDS", "auth_timeout")
    )
    fetch_timeout: float = Field(
        default=10.0, validation_alias=AliasChoices("FETCH_TIMEOUT_SECONDS", "fetch_timeout")
    )
    send_timeout: float = Field(
        default=5.0, validation_alias=AliasChoices("SEND_TIMEOUT_SECONDS", "send_timeout")
    )
    backoff_threshold: int = 3
    backoff_factor: float = 2.0
    backoff_max_interval: float = Field(
        default=120.0,
        validation_alias=AliasChoices("BACKOFF_MAX_INTERVAL_SECONDS", "backoff_max_interval"),
    )

    # Unset means strict in development, lenient elsewhere.
    strict_registry: bool | None = None

    @model_validator(mode="after")
    def default_strict_registry(self) -> "Settings":
        if self.strict_registry is None:
            self.strict_registry = self.environment == "development"
        return self

    @property
    def cadences(self) -> dict[TopicKind, float]:
        return {
            kind: getattr(self, f"poll_interval_{kind.value}")
            for kind in DEFAULT_CADENCES
        }


def configure_logging(level: str = "INFO") -> None:
    """Apply root logging config once at startup."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
