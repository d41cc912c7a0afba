"""Application settings loaded from environment variables.

Hey future me - every tunable of the engine lives here!

Settings are nested pydantic models under one pydantic-settings root. Env vars use the
SUBSYNC_ prefix and a double underscore for nesting:

    SUBSYNC_DATABASE__URL=sqlite+aiosqlite:////data/subsync.db
    SUBSYNC_QUEUE__MAX_CONCURRENT_DOWNLOADS=5
    SUBSYNC_LIBRARY__API_URL=http://localhost:41595

Call get_settings() instead of constructing Settings() in application code - it caches
the instance so every component sees the same values.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bounds for the number of parallel fetch processes
MIN_CONCURRENT_DOWNLOADS = 1
MAX_CONCURRENT_DOWNLOADS = 10


def clamp_concurrency(value: int) -> int:
    """Clamp a requested concurrency into the supported range."""
    return max(MIN_CONCURRENT_DOWNLOADS, min(MAX_CONCURRENT_DOWNLOADS, int(value)))


class DatabaseSettings(BaseModel):
    """Database configuration."""

    url: str = Field(
        default="sqlite+aiosqlite:///./subsync.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")
    pool_pre_ping: bool = Field(default=True, description="Ping connections before use")
    busy_timeout_ms: int = Field(
        default=30000, ge=0, description="SQLite busy timeout in milliseconds"
    )
    # Leases older than this are treated as left behind by a crashed process
    stale_lock_hours: float = Field(default=2.0, gt=0)


class QueueSettings(BaseModel):
    """Download queue / scheduler configuration."""

    max_concurrent_downloads: int = Field(default=3)
    max_retries: int = Field(default=2, ge=0)
    rate_limit_kbps: int = Field(default=0, ge=0, description="0 = unlimited")
    launch_delay_seconds: float = Field(default=0.1, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    progress_step_percent: int = Field(default=10, ge=1, le=100)

    # Out-of-range values are clamped, not rejected - a typo in the env shouldn't stop startup
    @field_validator("max_concurrent_downloads")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return clamp_concurrency(value)


class ReconciliationSettings(BaseModel):
    """Reconciliation pass configuration."""

    concurrent_subscriptions: int = Field(default=3, ge=1)
    smallest_backlog_first: bool = True
    subscription_timeout_minutes: float = Field(default=30.0, gt=0)
    # Full per-item metadata lookup before enqueueing (flat listings lack dates)
    enrich_metadata: bool = True
    metadata_batch_size: int = Field(default=20, ge=1)
    metadata_timeout_seconds: float = Field(default=120.0, gt=0)


class FetchToolSettings(BaseModel):
    """External fetch tool (yt-dlp) configuration."""

    binary: str = "yt-dlp"
    ffmpeg_location: str | None = None
    source_address: str = ""
    user_agent: str = ""
    cookie_file: str | None = None
    socket_timeout: int = Field(default=15, ge=1)


class StorageSettings(BaseModel):
    """Local file storage configuration."""

    download_path: Path = Field(default=Path("./downloads"))


class LibrarySettings(BaseModel):
    """External library (Eagle) configuration."""

    api_url: str = "http://localhost:41595"
    api_token: str | None = None
    request_timeout: float = Field(default=15.0, gt=0)
    import_timeout: float = Field(default=30.0, gt=0)
    duplicate_lookup_timeout: float = Field(default=15.0, gt=0)
    prefix_upload_date: bool = False
    min_artifact_bytes: int = Field(default=1024, ge=0)


class ObservabilitySettings(BaseModel):
    """Logging configuration."""

    log_json_format: bool = False


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_prefix="SUBSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "subsync"
    log_level: str = "INFO"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    fetch_tool: FetchToolSettings = Field(default_factory=FetchToolSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    library: LibrarySettings = Field(default_factory=LibrarySettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    def get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite database file path, or None for non-file databases."""
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path.startswith(":memory:"):
            return None
        return Path(path)

    def ensure_directories(self) -> None:
        """Create the directories the engine writes into."""
        self.storage.download_path.mkdir(parents=True, exist_ok=True)
        db_path = self.get_sqlite_db_path()
        if db_path is not None and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()
