"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
STATE_DB = Path(os.getenv("STATE_DB", str(DATA_DIR / "state.db")))
EVENTS_FILE = Path(os.getenv("EVENTS_FILE", str(DATA_DIR / "events.jsonl")))

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)


class Config:
    """Application configuration."""

    # Upstream status source
    UPSTREAM_URL: str = os.getenv("UPSTREAM_URL", "http://localhost:8080/pnr")
    UPSTREAM_TIMEOUT: float = float(os.getenv("UPSTREAM_TIMEOUT", "20"))
    UPSTREAM_CONCURRENCY: int = int(os.getenv("UPSTREAM_CONCURRENCY", "4"))
    UPSTREAM_RATE_PER_SECOND: float = float(os.getenv("UPSTREAM_RATE_PER_SECOND", "1.0"))
    UPSTREAM_MAX_ATTEMPTS: int = int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3"))
    UPSTREAM_BACKOFF_MULTIPLIER: float = float(os.getenv("UPSTREAM_BACKOFF_MULTIPLIER", "2.0"))
    UPSTREAM_BACKOFF_MIN: float = float(os.getenv("UPSTREAM_BACKOFF_MIN", "2"))
    UPSTREAM_BACKOFF_MAX: float = float(os.getenv("UPSTREAM_BACKOFF_MAX", "30"))

    # Cache
    STATUS_CACHE_TTL: float = float(os.getenv("STATUS_CACHE_TTL", "300"))
    BATCH_CACHE_TTL: float = float(os.getenv("BATCH_CACHE_TTL", "30"))

    # Checks
    BATCH_CONCURRENCY: int = int(os.getenv("BATCH_CONCURRENCY", "4"))
    CHECK_INTERVAL: float = float(os.getenv("CHECK_INTERVAL", "1800"))
    SCHEDULER_WORKERS: int = int(os.getenv("SCHEDULER_WORKERS", "4"))
    SCHEDULER_MAX_INTERVAL: float = float(os.getenv("SCHEDULER_MAX_INTERVAL", "21600"))
    SWEEP_INTERVAL: float = float(os.getenv("SWEEP_INTERVAL", "3600"))
    DRAIN_TIMEOUT: float = float(os.getenv("DRAIN_TIMEOUT", "10"))
    NOTIFY_RECOVERY_HOURS: float = float(os.getenv("NOTIFY_RECOVERY_HOURS", "24"))

    # Archiving / retention
    ARCHIVE_DAYS_AFTER_TRAVEL: int = int(os.getenv("ARCHIVE_DAYS_AFTER_TRAVEL", "7"))
    HISTORY_RETENTION_DAYS: int = int(os.getenv("HISTORY_RETENTION_DAYS", "0"))

    # Notification channels
    SMTP_SERVER: str = os.getenv("SMTP_SERVER", "smtp.gmail.com")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SENDER_EMAIL: str | None = os.getenv("SENDER_EMAIL")
    SENDER_PASSWORD: str | None = os.getenv("SENDER_PASSWORD")
    PUSH_TIMEOUT: float = float(os.getenv("PUSH_TIMEOUT", "10"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls, require_email: bool = False) -> None:
        """Validate required configuration."""
        errors = []
        if not cls.UPSTREAM_URL:
            errors.append("UPSTREAM_URL is required")
        if cls.UPSTREAM_CONCURRENCY < 1:
            errors.append("UPSTREAM_CONCURRENCY must be >= 1")
        if cls.UPSTREAM_MAX_ATTEMPTS < 1:
            errors.append("UPSTREAM_MAX_ATTEMPTS must be >= 1")
        if cls.BATCH_CACHE_TTL > cls.STATUS_CACHE_TTL:
            errors.append("BATCH_CACHE_TTL must not exceed STATUS_CACHE_TTL")
        if cls.SCHEDULER_MAX_INTERVAL < cls.CHECK_INTERVAL:
            errors.append("SCHEDULER_MAX_INTERVAL must be >= CHECK_INTERVAL")
        if require_email and (not cls.SENDER_EMAIL or not cls.SENDER_PASSWORD):
            errors.append("SENDER_EMAIL and SENDER_PASSWORD are required for email notifications")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
