"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_hub"
    # Full async SQLAlchemy URL; overrides the TiDB fields when set
    # (e.g. sqlite+aiosqlite:///./local.db for local development).
    database_url: Optional[str] = None

    @property
    def tidb_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379

    # ── Realtime ───────────────────────────────────────────────────────────
    # 'redis' relays room events through Redis pub/sub so every API worker
    # sees them; 'local' keeps rooms and presence in-process.
    realtime_backend: str = "redis"
    realtime_channel: str = "realtime:events"
    realtime_presence_prefix: str = "presence"

    # ── Auth ───────────────────────────────────────────────────────────────
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expiration_hours: int = 24

    # ── Feed ───────────────────────────────────────────────────────────────
    feed_page_size: int = 50                 # items returned by POST /api/feed
    suggestion_page_size: int = 10           # items returned by suggest-content
    suggestion_candidates_per_type: int = 10 # most-recent items fetched per type
    story_lookback_hours: int = 24

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    tracing_enabled: bool = True
    service_name: str = "social-hub-api"
    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
