"""Application configuration using pydantic settings with structured sections."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False


class DatabaseSettings(BaseModel):
    url: str = Field(default="sqlite+aiosqlite:///./scheduler.db", alias="url")
    echo: bool = False
    pool_size: Optional[int] = None
    max_overflow: Optional[int] = None


class SecuritySettings(BaseModel):
    secret_key: str = Field(default="change-me", min_length=8)
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    device_token_expire_minutes: int = 60 * 24 * 30


class WebSocketSettings(BaseModel):
    heartbeat_interval: int = 30
    timeout: int = 300


class SchedulerSettings(BaseModel):
    """Tick cadence and policy constants of the scheduling engine."""

    enabled: bool = True
    tick_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=100, ge=1)
    expiration_grace_seconds: int = 3600
    global_retry_cap: int = Field(default=5, ge=0)
    retry_backoff_base: int = 10
    retry_backoff_max: int = 300
    retention_days: int = 30
    # run housekeeping once every N ticks
    housekeeping_every: int = Field(default=720, ge=1)


class LockSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    ttl_seconds: int = 30
    cancel_wait_seconds: float = 5.0


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseSettings):
    """Top-level application settings with nested sections."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    project_name: str = "Device Task Scheduler"
    api_prefix: str = "/api"

    server: ServerSettings = ServerSettings()
    database: DatabaseSettings = DatabaseSettings()
    security: SecuritySettings = SecuritySettings()
    websocket: WebSocketSettings = WebSocketSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    locks: LockSettings = LockSettings()
    logging: LoggingSettings = LoggingSettings()

    @property
    def database_url(self) -> str:
        return self.database.url

    @property
    def host(self) -> str:
        return self.server.host

    @property
    def port(self) -> int:
        return self.server.port

    @property
    def secret_key(self) -> str:
        return self.security.secret_key

    @property
    def algorithm(self) -> str:
        return self.security.algorithm

    @property
    def access_token_expire_minutes(self) -> int:
        return self.security.access_token_expire_minutes

    @property
    def ws_heartbeat_interval(self) -> int:
        return self.websocket.heartbeat_interval

    @property
    def ws_timeout(self) -> int:
        return self.websocket.timeout


@lru_cache()
def get_settings() -> Settings:
    return Settings()
