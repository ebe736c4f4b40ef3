import logging
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "copytrade.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: str | None = None

    # API server
    CORS_ORIGINS: list[str] = ["*"]

    # ProjectX gateway (TopstepX / AlphaTicks white labels)
    PROJECTX_API_URL: str = "https://api.topstepx.com"
    PROJECTX_ALPHATICKS_API_URL: str = "https://api.alphaticks.projectx.com"
    PROJECTX_HUB_URL: str = "https://rtc.topstepx.com/hubs/user"
    PROJECTX_ALPHATICKS_HUB_URL: str = "https://rtc.alphaticks.projectx.com/hubs/user"
    PROJECTX_CLIENT_ID: str | None = None
    PROJECTX_CLIENT_SECRET: str | None = None

    # Tradovate
    TRADOVATE_API_URL: str = "https://api.tradovate.com/v1"
    TRADOVATE_CLIENT_ID: str | None = None
    TRADOVATE_CLIENT_SECRET: str | None = None

    # Bybit v5
    BYBIT_API_URL: str = "https://api.bybit.com"
    BYBIT_RECV_WINDOW: int = 5000
    BYBIT_CATEGORY: str = "linear"

    # Broker transport
    BROKER_HTTP_TIMEOUT_SECONDS: float = 15.0
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300  # refresh OAuth tokens expiring within 5 min

    # Copy-trade pipeline
    COPY_TRADE_DEDUP_WINDOW_SECONDS: int = 30
    COPY_TRADE_POLL_INTERVAL_SECONDS: int = 10
    COPY_TRADE_PRICE_TOLERANCE: float = 0.01
    COPY_TRADE_WORKER_ENABLED: bool = False
    COPY_TRADE_REALTIME_ENABLED: bool = False
    COPY_TRADE_HUB_REFRESH_SECONDS: float = 30.0  # how often hubs follow config changes

    # Real-time hub
    HUB_HANDSHAKE_TIMEOUT_SECONDS: float = 10.0
    HUB_RECONNECT_BASE_DELAY: float = 1.0
    HUB_RECONNECT_MAX_DELAY: float = 30.0
    HUB_MAX_RECONNECT_ATTEMPTS: int = 10  # 0 = retry forever

    @field_validator(
        "PROJECTX_API_URL",
        "PROJECTX_ALPHATICKS_API_URL",
        "PROJECTX_HUB_URL",
        "PROJECTX_ALPHATICKS_HUB_URL",
        "TRADOVATE_API_URL",
        "BYBIT_API_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    @model_validator(mode="after")
    def _check_dedup_window(self) -> "Settings":
        # A poll must always land inside the previous poll's dedup window.
        if self.COPY_TRADE_DEDUP_WINDOW_SECONDS <= self.COPY_TRADE_POLL_INTERVAL_SECONDS:
            raise ValueError(
                "COPY_TRADE_DEDUP_WINDOW_SECONDS must be larger than COPY_TRADE_POLL_INTERVAL_SECONDS"
            )
        return self

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()


def projectx_api_url(service_type: str | None) -> str:
    """Default REST base URL for a ProjectX white label."""
    if (service_type or "").strip().lower() == "alphaticks":
        return settings.PROJECTX_ALPHATICKS_API_URL
    return settings.PROJECTX_API_URL


def projectx_hub_url(service_type: str | None) -> str:
    """User hub URL for a ProjectX white label."""
    if (service_type or "").strip().lower() == "alphaticks":
        return settings.PROJECTX_ALPHATICKS_HUB_URL
    return settings.PROJECTX_HUB_URL
