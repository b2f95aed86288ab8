from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import os
import logging
from pathlib import Path
from typing import Optional

# Set up logging
logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigError(Exception):
    """Raised when the settings file cannot be read or fails validation."""
    pass


class SyncSettings(BaseModel):
    """Settings for one sync run. Built once and handed to every stage."""
    # SQLAlchemy URL for the KPTV database (mysql+pymysql://... in production)
    database_url: str = f"sqlite:///{CONFIG_DIR / 'kptv.db'}"
    # Provider HTTP settings
    http_timeout: float = 60.0
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    # Total attempts per request, linear backoff of retry_delay * attempt seconds
    retry_attempts: int = 3
    retry_delay: float = 2.0
    # Pause between Xtream-Codes endpoint calls to avoid provider rate limits
    request_delay: float = 1.0
    # Batch sizes
    staging_batch_size: int = 1000
    insert_batch_size: int = 500
    fixup_batch_size: int = 1000
    # Print a progress line every N updated rows
    progress_interval: int = 500
    # Fall back to matching on original name when a provider rotates its stream URIs
    match_by_name: bool = True
    # Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    def validate_values(self) -> None:
        """Check numeric ranges and the log level; raises ConfigError."""
        problems = []
        for name in ("retry_attempts", "staging_batch_size", "insert_batch_size",
                     "fixup_batch_size", "progress_interval"):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be at least 1")
        for name in ("http_timeout",):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")
        for name in ("retry_delay", "request_delay"):
            if getattr(self, name) < 0:
                problems.append(f"{name} cannot be negative")
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            problems.append(f"log_level must be one of {', '.join(VALID_LOG_LEVELS)}")
        if not self.database_url:
            problems.append("database_url is required")
        if problems:
            raise ConfigError("; ".join(problems))


class EnvSettings(BaseSettings):
    """Overrides from the environment (for container config)."""
    model_config = SettingsConfigDict(env_prefix="KPTV_", env_file=".env", env_file_encoding="utf-8")

    database_url: Optional[str] = None
    log_level: Optional[str] = None


def load_settings(path: Optional[Path] = None) -> SyncSettings:
    """
    Load settings from a JSON file, apply environment overrides and validate.

    A missing file yields the defaults. A file that cannot be parsed or holds
    invalid values raises ConfigError.
    """
    config_file = Path(path) if path else CONFIG_FILE
    logger.debug(f"Loading settings from {config_file}")

    data = {}
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to read settings from {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {config_file} must contain a JSON object")
    elif path:
        raise ConfigError(f"Settings file not found: {config_file}")
    else:
        logger.debug("No settings file found, using defaults")

    env = EnvSettings()
    if env.database_url:
        data["database_url"] = env.database_url
    if env.log_level:
        data["log_level"] = env.log_level

    try:
        settings = SyncSettings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {config_file}: {e}") from e

    settings.validate_values()
    settings.log_level = settings.log_level.upper()
    return settings


def save_settings(settings: SyncSettings, path: Optional[Path] = None) -> None:
    """Save settings to file."""
    config_file = Path(path) if path else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(settings.model_dump(), indent=2))
    logger.info(f"Settings saved to {config_file}")
