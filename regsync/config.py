from __future__ import annotations
from functools import lru_cache
from typing import Dict, List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "RegSync Alert Pipeline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default

    # ── CORS ─────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "regsync"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ── Redis ────────────────────────────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 20
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Cache TTLs (seconds) ─────────────────────────────────────────────────
    CACHE_TTL_STATUS: int = 60       # sync/status summary
    CACHE_STALE_GRACE: int = 60      # stale-while-revalidate window
    HEALTH_LOG_SIZE: int = 50        # rolling health-check snapshots kept

    # ── HTTP client ──────────────────────────────────────────────────────────
    HTTP_TIMEOUT: float = 20.0
    HTTP_MAX_CONNECTIONS: int = 12
    HTTP_USER_AGENT: str = "RegSync/1.0 (+regulatory alert ingestion)"

    # ── Pipeline ─────────────────────────────────────────────────────────────
    MAX_CONCURRENT_SOURCES: int = 6
    SOURCE_TIMEOUT_SECONDS: float = 45.0
    SOURCE_RETRY_BACKOFF_SECONDS: float = 2.0
    DEFAULT_SINCE_DAYS: int = 30
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_RECOVERY_SECONDS: int = 900

    # ── Scheduler ────────────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 60
    SCHEDULED_SINCE_DAYS: int = 2
    RECONCILE_INTERVAL_MINUTES: int = 15
    STALE_RUN_TIMEOUT_MINUTES: int = 60

    # ── Sources ──────────────────────────────────────────────────────────────
    ENABLED_SOURCES: List[str] = ["FDA", "FSIS", "EPA", "CDC"]
    FDA_API_KEY: Optional[str] = None
    FDA_ENDPOINTS: List[str] = [
        "/food/enforcement.json",
        "/drug/enforcement.json",
        "/device/enforcement.json",
    ]
    FDA_PAGE_SIZE: int = 100
    FDA_MAX_PAGES: int = 5
    FSIS_FEEDS: Dict[str, str] = {
        "recalls": "https://www.fsis.usda.gov/fsis-content/rss/recalls.xml",
        "notices": "https://www.fsis.usda.gov/fsis-content/rss/notices.xml",
    }
    EPA_PAGE_SIZE: int = 100
    EPA_MAX_PAGES: int = 3
    CDC_FEED_URL: str = "https://www2c.cdc.gov/podcasts/createrss.asp?c=146"
    FRESHNESS_THRESHOLD_HOURS: Dict[str, int] = {}  # overrides per source

    # ── Health checks ────────────────────────────────────────────────────────
    HEALTH_PROBE_ENABLED: bool = True
    HEALTH_PROBE_TIMEOUT: float = 10.0

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("ENABLED_SOURCES")
    @classmethod
    def normalize_sources(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s.strip()]

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
