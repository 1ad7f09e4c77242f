"""Configuration settings for the sync engine."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
TIMER_STATE_FILE = DATA_DIR / os.getenv("TIMER_STATE_FILE", "timer_state.json")

# Units every room starts with
DEFAULT_UNITS = ["mg", "g", "tsp", "tbsp", "oz", "mL", "nuts", "fist sized"]


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        DATA_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    timer_state_file: Path = TIMER_STATE_FILE


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///tipsync.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class SyncSettings:
    """Synchronization and timer settings."""
    room_id: str = os.getenv("ROOM_ID", "local")
    actor_id: str = os.getenv("ACTOR_ID", "")
    timer_enabled: bool = os.getenv("TIMER_ENABLED", "true").lower() == "true"
    timer_duration: float = float(os.getenv("TIMER_DURATION_SECONDS", "900"))
    snooze_duration: float = float(os.getenv("SNOOZE_DURATION_SECONDS", "300"))
    timer_debounce: float = float(os.getenv("TIMER_DEBOUNCE_SECONDS", "0.5"))
    rollover_check_interval: float = float(os.getenv("ROLLOVER_CHECK_INTERVAL", "60"))
    timer_tick_interval: float = float(os.getenv("TIMER_TICK_INTERVAL", "1"))
    retry_interval: float = float(os.getenv("RETRY_INTERVAL", "30"))
    timezone: str = os.getenv("TIMEZONE", "")


@dataclass
class MonitoringSettings:
    """Prometheus metrics settings."""
    enabled: bool = os.getenv("METRICS_ENABLED", "false").lower() == "true"
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_sync_settings() -> SyncSettings:
    """Get sync settings."""
    return SyncSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.sync.timer_duration <= 0:
            raise ValueError("TIMER_DURATION_SECONDS must be positive")

        if self.sync.snooze_duration <= 0:
            raise ValueError("SNOOZE_DURATION_SECONDS must be positive")

        if self.sync.timer_debounce < 0:
            raise ValueError("TIMER_DEBOUNCE_SECONDS cannot be negative")

        for name, value in (
            ("ROLLOVER_CHECK_INTERVAL", self.sync.rollover_check_interval),
            ("TIMER_TICK_INTERVAL", self.sync.timer_tick_interval),
            ("RETRY_INTERVAL", self.sync.retry_interval),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be positive")

        if self.sync.timezone:
            try:
                ZoneInfo(self.sync.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown TIMEZONE: {self.sync.timezone}") from e


# Create global settings instance
settings = Settings()
settings.validate()
