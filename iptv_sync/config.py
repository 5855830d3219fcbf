from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    database_path: str = "./data/iptv.db"
    log_level: str = "INFO"

    playlist_refresh_cron: str = "0 */6 * * *"  # Every 6 hours
    epg_refresh_cron: str = "30 3 * * *"  # Daily at 3:30 AM
    scheduler_misfire_grace_sec: int = 3600

    fetch_timeout_sec: float = 60.0
    fetch_max_retries: int = 1  # One logical attempt, callers own retry policy
    fetch_backoff_factor: float = 2.0
    default_user_agent: str | None = None

    epg_parse_timeout_sec: int = 600  # XML parsing timeout, 0 disables timeout
    max_epg_depth: int = 2  # Days of past programmes kept per EPG source

    sync_max_concurrency: int = 4
    sync_progress_step: int = 100
    xtream_live_extension: str = "ts"

    sqlite_journal_mode: str = "WAL"
    sqlite_default_cache_size_kb: int = 64000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, value: str) -> str:
        """Validate database path is accessible."""
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access database path '{value}': {exc}") from exc

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("playlist_refresh_cron", "epg_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @field_validator("max_epg_depth")
    @classmethod
    def validate_day_range(cls, value: int, info) -> int:
        """Validate day range values are positive and reasonable."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        if value > 365:
            raise ValueError(f"{info.field_name} must be <= 365 days")
        return value

    @field_validator("epg_parse_timeout_sec", "scheduler_misfire_grace_sec")
    @classmethod
    def validate_non_negative(cls, value: int, info) -> int:
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator(
        "fetch_max_retries",
        "sync_max_concurrency",
        "sync_progress_step",
        "sqlite_default_cache_size_kb",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("fetch_timeout_sec")
    @classmethod
    def validate_fetch_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("fetch_timeout_sec must be > 0")
        return value

    @field_validator("fetch_backoff_factor")
    @classmethod
    def validate_backoff_factor(cls, value: float) -> float:
        """Ensure the backoff multiplier is at least 1."""
        if value < 1:
            raise ValueError("fetch_backoff_factor must be >= 1")
        return value

    @field_validator("xtream_live_extension")
    @classmethod
    def validate_live_extension(cls, value: str) -> str:
        normalized = value.strip().lstrip(".").lower()
        if not normalized:
            raise ValueError("xtream_live_extension must not be empty")
        return normalized

    @field_validator("sqlite_journal_mode")
    @classmethod
    def validate_journal_mode(cls, value: str) -> str:
        """Validate SQLite journal mode."""
        normalized = value.upper()
        allowed = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
        if normalized not in allowed:
            raise ValueError(f"sqlite_journal_mode must be one of {sorted(allowed)}")
        return normalized

    @model_validator(mode="after")
    def validate_user_agent(self):
        """Treat a blank user agent as unset."""
        if self.default_user_agent is not None and not self.default_user_agent.strip():
            self.default_user_agent = None
        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Database: %s", self.database_path)
        logger.info("  Playlist Refresh Schedule: %s", self.playlist_refresh_cron)
        logger.info("  EPG Refresh Schedule: %s", self.epg_refresh_cron)
        logger.info(
            "  Fetch: timeout=%.1fs attempts=%s backoff=%.1f",
            self.fetch_timeout_sec,
            self.fetch_max_retries,
            self.fetch_backoff_factor,
        )
        logger.info("  Sync Concurrency: %s", self.sync_max_concurrency)
        logger.info("  EPG Archive Depth: %s days", self.max_epg_depth)
        logger.info(
            "  Parse Timeout: %s seconds",
            self.epg_parse_timeout_sec or "disabled",
        )
        logger.info("  SQLite Journal Mode: %s", self.sqlite_journal_mode)


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
