from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from fortized.social.limits import SocialLimits


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Fortized Social API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:8080",
            "http://127.0.0.1",
            "http://127.0.0.1:8080",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    store_backend: Literal["memory", "sql", "redis"] = Field(
        default="memory",
        env="STORE_BACKEND",
        description="Persistence backend for social records.",
    )
    database_url: str = Field(
        default="sqlite+pysqlite:///./fortized.db",
        env="DATABASE_URL",
        description="SQLAlchemy URL used by the sql store backend.",
    )
    store_redis_url: str | None = Field(
        default=None,
        env="STORE_REDIS_URL",
        description="Redis URL used by the redis store backend.",
    )
    store_namespace: str = Field(
        default="fortized",
        env="STORE_NAMESPACE",
        description="Key prefix for records kept in Redis.",
    )
    store_transaction_max_retries: int = Field(
        default=25,
        env="STORE_TRANSACTION_MAX_RETRIES",
        description="Compare-and-swap attempts before a transaction gives up.",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL relaying store mutations between API nodes.",
    )
    realtime_nats_url: str | None = Field(
        default=None,
        env="REALTIME_NATS_URL",
        description="NATS URL relaying store mutations between API nodes.",
    )
    realtime_namespace: str = Field(
        default="fortized.realtime",
        env="REALTIME_NAMESPACE",
        description="Channel prefix for relayed mutations.",
    )
    realtime_node_id: str | None = Field(
        default=None,
        env="REALTIME_NODE_ID",
        description="Identifier of this node; echoes of its own writes are ignored.",
    )
    realtime_backend_preference: Literal["redis", "nats"] | None = Field(
        default=None,
        env="REALTIME_BACKEND_PREFERENCE",
        description="Relay backend to use when both are configured.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    sync_poll_interval_seconds: float = Field(
        default=2.0,
        env="SYNC_POLL_INTERVAL_SECONDS",
        description="Interval of the polling safety net behind push delivery.",
    )
    notification_cap: int = Field(default=50, env="NOTIFICATION_CAP")
    dm_partner_cap: int = Field(default=30, env="DM_PARTNER_CAP")
    channel_message_cap: int = Field(default=500, env="CHANNEL_MESSAGE_CAP")
    dm_preview_length: int = Field(default=60, env="DM_PREVIEW_LENGTH")
    starting_balance: int = Field(default=25, env="STARTING_BALANCE")
    mark_request_read_on_accept: bool = Field(
        default=False,
        env="MARK_REQUEST_READ_ON_ACCEPT",
        description="Mark the accepted friend request notification as read.",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30.0,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="Idle time after which the server checks on a websocket.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25.0,
        env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS",
        description="Minimum gap between keepalive pings on an idle websocket.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("store_backend", mode="before")
    @classmethod
    def normalize_store_backend(cls, value: str) -> str:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def social_limits(self) -> SocialLimits:
        return SocialLimits(
            notification_cap=self.notification_cap,
            dm_partner_cap=self.dm_partner_cap,
            channel_message_cap=self.channel_message_cap,
            dm_preview_length=self.dm_preview_length,
            starting_balance=self.starting_balance,
            mark_request_read_on_accept=self.mark_request_read_on_accept,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
