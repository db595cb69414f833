from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator

from centinel.core.logger import logger

COINBASE_WS_URL = "wss://ws-feed.exchange.coinbase.com"

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "Centinel"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Exchange
    EXCHANGE_NAME: str = Field(default="coinbase", description="Source label stamped on every event")
    EXCHANGE_WS_PUBLIC_URL: str = Field(default=COINBASE_WS_URL, description="Public streaming endpoint")
    EXCHANGE_WS_PRIVATE_URL: str = Field(default=COINBASE_WS_URL, description="Authenticated streaming endpoint")
    EXCHANGE_API_KEY: str = Field(default="", description="Exchange API Key")
    EXCHANGE_API_SECRET: str = Field(default="", description="Exchange API Secret (base64)")
    EXCHANGE_API_PASSPHRASE: str = Field(default="", description="Exchange API Passphrase")
    EXCHANGE_WS_RECONNECT: bool = Field(default=False, description="Reconnect with backoff after a dropped stream")
    EXCHANGE_WS_RECONNECT_MAX_DELAY: float = Field(default=60.0, gt=0)

    # Market Data
    MARKET_DATA_SYMBOLS: List[str] = Field(default=["BTC-USD"], description="Symbols to subscribe to")

    # Bus (Kafka)
    BUS_BOOTSTRAP_SERVERS: str = Field(..., description="Kafka bootstrap servers, e.g. localhost:9092")
    BUS_TOPIC_MARKET_DATA: str = "coinbase-market-data"
    BUS_CONSUMER_GROUP_ID: str = "analysis-service-group"
    BUS_CONSUMER_LISTENER_THREADS: int = Field(default=3, ge=1)
    BUS_CONSUMER_MAX_POLL_RECORDS: int = Field(default=100, ge=1)
    BUS_CONSUMER_FETCH_MIN_BYTES: int = Field(default=1024, ge=1)
    BUS_CONSUMER_FETCH_MAX_WAIT_MS: int = Field(default=500, ge=0)
    BUS_CONSUMER_MAX_BATCH_ATTEMPTS: int = Field(default=10, ge=1)
    BUS_PRODUCER_ACKS: int = 1
    BUS_PRODUCER_LINGER_MS: int = Field(default=5, ge=0)
    BUS_PRODUCER_MAX_BATCH_SIZE: int = Field(default=16384, ge=1)
    BUS_PRODUCER_REQUEST_TIMEOUT_MS: int = Field(default=30000, ge=1)
    BUS_START_RETRY_DELAY: float = Field(default=1.0, gt=0, description="First pause before retrying an unreachable broker")
    BUS_START_RETRY_MAX_DELAY: float = Field(default=30.0, gt=0)

    # Worker pool
    WORKER_POOL_CORE_SIZE: int = Field(default=10, ge=1)
    WORKER_POOL_MAX_SIZE: int = Field(default=50, ge=1)
    WORKER_POOL_QUEUE_CAPACITY: int = Field(default=100, ge=0)
    WORKER_POOL_TERMINATION_GRACE_SECONDS: float = Field(default=60.0, ge=0)

    # Storage
    DATABASE_PATH: str = "data/market_data.db"

    # HTTP
    HTTP_HOST: str = "0.0.0.0"
    MONITOR_HTTP_PORT: int = 8081
    ANALYSIS_HTTP_PORT: int = 8082

    @field_validator("MARKET_DATA_SYMBOLS", mode="before")
    @classmethod
    def parse_symbols(cls, v):
        if isinstance(v, str) and not v.strip().startswith("["):
            # Handle comma-separated string: "BTC-USD,ETH-USD"
            return [x.strip() for x in v.split(",") if x.strip()]
        return v

    @field_validator("BUS_BOOTSTRAP_SERVERS")
    @classmethod
    def require_bootstrap_servers(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("BUS_BOOTSTRAP_SERVERS must not be blank")
        return v.strip()

    @model_validator(mode="after")
    def check_pool_bounds(self):
        if self.WORKER_POOL_MAX_SIZE < self.WORKER_POOL_CORE_SIZE:
            raise ValueError("WORKER_POOL_MAX_SIZE must be >= WORKER_POOL_CORE_SIZE")
        return self

    @property
    def exchange_auth_enabled(self) -> bool:
        return bool(self.EXCHANGE_API_KEY and self.EXCHANGE_API_SECRET and self.EXCHANGE_API_PASSPHRASE)


def load_settings(**overrides) -> Settings:
    """Build settings once at process start. Raises ValidationError on bad config."""
    settings = Settings(**overrides)
    logger.info(
        "Configuration loaded",
        extra={
            "exchange": settings.EXCHANGE_NAME,
            "symbols": settings.MARKET_DATA_SYMBOLS,
            "topic": settings.BUS_TOPIC_MARKET_DATA,
            "auth": settings.exchange_auth_enabled,
        },
    )
    return settings
