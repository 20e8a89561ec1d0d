from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_REMAP_PATH = PACKAGE_DIR / "resources" / "epg_remapping.txt"


class CustomSettings(BaseSettings):
    """Service settings loaded from environment variables or .env.

    Covers fetching, per-session storage, guide retention and session expiry.
    Validated at startup so a bad cron or directory fails fast.
    """

    data_dir: str = "./data"
    default_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    remap_default_path: str = str(DEFAULT_REMAP_PATH)
    log_level: str = "INFO"

    http_timeout_sec: float = 100.0
    http_max_retries: int = 3
    http_backoff_factor: float = 2.0

    cache_poll_interval_sec: int = 60
    default_refresh_hours: int = 12

    epg_refresh_cron: str = "0 3 * * *"  # Daily at 3 AM
    epg_cleanup_cron: str = "0 */6 * * *"  # Every 6 hours
    epg_programs_chunk_size: int = 5000
    epg_past_retention_hours: int = 1
    epg_future_window_days: int = 7
    epg_parse_timeout_sec: int = 600  # XML parsing timeout, 0 disables timeout

    session_ttl_hours: int = 24
    session_sweep_interval_min: int = 15

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir")
    @classmethod
    def validate_data_dir(cls, value: str) -> str:
        """Validate data directory is accessible."""
        path = Path(value)
        try:
            path.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access data directory '{value}': {exc}") from exc

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level name."""
        normalized = value.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator(
        "http_max_retries",
        "cache_poll_interval_sec",
        "default_refresh_hours",
        "epg_programs_chunk_size",
        "epg_future_window_days",
        "session_ttl_hours",
        "session_sweep_interval_min",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("epg_past_retention_hours", "epg_parse_timeout_sec")
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure integer settings are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("http_timeout_sec", "http_backoff_factor")
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure floating-point settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("epg_refresh_cron", "epg_cleanup_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_remap_default(self):
        """Warn when the bundled remap file is missing."""
        if not Path(self.remap_default_path).is_file():
            logger.warning(
                "Default remap file not found at %s - remapping falls back to an empty table",
                self.remap_default_path,
            )
        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Data directory: %s", self.data_dir)
        logger.info("  Default remap file: %s", self.remap_default_path)
        logger.info("  HTTP timeout: %ss (retries: %s)", self.http_timeout_sec, self.http_max_retries)
        logger.info("  Cache poll interval: %ss", self.cache_poll_interval_sec)
        logger.info("  Default refresh threshold: %s hours", self.default_refresh_hours)
        logger.info("  EPG refresh schedule: %s", self.epg_refresh_cron)
        logger.info("  EPG cleanup schedule: %s", self.epg_cleanup_cron)
        logger.info("  EPG program batch size: %s", self.epg_programs_chunk_size)
        logger.info(
            "  EPG retention window: -%sh / +%sd",
            self.epg_past_retention_hours,
            self.epg_future_window_days,
        )
        logger.info(
            "  Parse timeout: %s seconds",
            self.epg_parse_timeout_sec or "disabled",
        )
        logger.info(
            "  Session TTL: %sh (sweep every %s min)",
            self.session_ttl_hours,
            self.session_sweep_interval_min,
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
