"""Configuration management for the clip service."""

import logging
import os
from pathlib import Path
from typing import Any, List

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables.

    Every attribute can be overridden by keyword, which is how tests build
    an isolated configuration rooted in a temporary directory.
    """

    # Paths
    DATA_DIR: str = os.getenv("DATA_DIR", "/app/data")
    UPLOADS_DIR: str = os.getenv("UPLOADS_DIR", "/app/data/uploads")
    CLIPS_DIR: str = os.getenv("CLIPS_DIR", "/app/data/clips")
    THUMBNAILS_DIR: str = os.getenv("THUMBNAILS_DIR", "/app/data/thumbnails")
    TEMP_DIR: str = os.getenv("TEMP_DIR", "/app/temp")
    BACKUP_DIR: str = os.getenv("BACKUP_DIR", "/app/data/backups")
    LOGS_DIR: str = os.getenv("LOGS_DIR", "/app/logs")
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "/app/data/app.db")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "clipper.log")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Transcoding engine
    FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg")
    FFPROBE_BINARY: str = os.getenv("FFPROBE_BINARY", "ffprobe")

    # Credits
    DEFAULT_CREDITS: int = int(os.getenv("DEFAULT_CREDITS", "10"))
    REFUND_ON_FAILURE: bool = _env_bool("REFUND_ON_FAILURE", "true")

    # Clips
    DEFAULT_CLIP_DURATION: int = int(os.getenv("DEFAULT_CLIP_DURATION", "300"))
    MIN_CLIP_DURATION: int = 10

    # Workers
    MAX_CONCURRENT_JOBS: int = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))

    # Scheduler cadences (seconds)
    SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
    EXPIRED_CLIPS_INTERVAL: int = 60 * 60
    TEMP_FILES_INTERVAL: int = 30 * 60
    ORPHAN_FILES_INTERVAL: int = 6 * 60 * 60
    LOG_ARCHIVE_INTERVAL: int = 24 * 60 * 60
    DATASTORE_MAINTENANCE_INTERVAL: int = 24 * 60 * 60
    HEALTH_SAMPLE_INTERVAL: int = 15 * 60
    BACKUP_INTERVAL: int = 24 * 60 * 60

    # Retention thresholds
    TEMP_FILE_MAX_AGE: int = 2 * 60 * 60
    ORPHAN_GRACE_SECONDS: int = 60 * 60
    LOG_RETENTION_DAYS: int = 30
    ACTIVITY_RETENTION_DAYS: int = 90
    ERROR_RETENTION_DAYS: int = 180
    BACKUP_RETENTION_DAYS: int = 7

    # Health thresholds
    DISK_USAGE_WARN_PERCENT: float = 85.0
    MEMORY_USAGE_WARN_PERCENT: float = 80.0
    ERROR_RATE_WARN_PER_HOUR: int = 10

    # Backups
    BACKUP_CONFIG_FILES: List[str] = [
        p for p in os.getenv("BACKUP_CONFIG_FILES", "pyproject.toml,.env").split(",") if p
    ]

    # Users allowed to run maintenance tasks through the API
    ADMIN_USER_IDS: List[str] = [
        u for u in os.getenv("ADMIN_USER_IDS", "").split(",") if u
    ]

    # CORS
    CORS_ORIGINS: list = ["*"]

    def __init__(self, **overrides: Any):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"sqlite+aiosqlite:///{self.DATABASE_PATH}"

    @property
    def managed_directories(self) -> List[Path]:
        return [
            Path(self.UPLOADS_DIR),
            Path(self.CLIPS_DIR),
            Path(self.THUMBNAILS_DIR),
            Path(self.TEMP_DIR),
            Path(self.BACKUP_DIR),
            Path(self.LOGS_DIR),
        ]

    def ensure_directories(self):
        """Ensure required directories exist."""
        for directory in self.managed_directories:
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Directory ensured: {directory}")
        Path(self.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_root(cls, root: Path, **overrides: Any) -> "Settings":
        """Build settings with every managed path under ``root``."""
        root = Path(root)
        paths = {
            "DATA_DIR": str(root / "data"),
            "UPLOADS_DIR": str(root / "data" / "uploads"),
            "CLIPS_DIR": str(root / "data" / "clips"),
            "THUMBNAILS_DIR": str(root / "data" / "thumbnails"),
            "TEMP_DIR": str(root / "temp"),
            "BACKUP_DIR": str(root / "data" / "backups"),
            "LOGS_DIR": str(root / "logs"),
            "DATABASE_PATH": str(root / "data" / "app.db"),
        }
        paths.update(overrides)
        return cls(**paths)


settings = Settings()
