"""
Runtime configuration for kivrafs.

Loaded from ``<home>/config.yaml``. Every field has a default, so a
missing file simply means "use the defaults".
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import KIVRAFS_HOME

logger = logging.getLogger("kivrafs.config")

CONFIG_FILE = "config.yaml"


class RetryConfig(BaseModel):
    """Exponential backoff for transient transport failures."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class AppConfig(BaseModel):
    """Persistent configuration for the mailbox gateway."""

    home: Path = Path(KIVRAFS_HOME)
    api_url: str = "https://app.api.kivra.com"
    accounts_url: str = "https://accounts.kivra.com"

    staleness_seconds: float = Field(default=60.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    login_poll_interval: float = Field(default=1.0, gt=0)
    login_poll_max_interval: float = Field(default=5.0, gt=0)
    login_timeout: float = Field(default=300.0, gt=0)

    mount_ready_timeout: float = Field(default=15.0, gt=0)
    direct_io: bool = True
    # Reported st_size for attachments whose size the listing does not advertise
    unknown_size: int = Field(default=0, ge=0)

    log_level: str = "INFO"
    session_file: Optional[Path] = None
    cache_dir: Optional[Path] = None

    @property
    def session_path(self) -> Path:
        return (self.session_file or self.home / "session.json").expanduser()

    @property
    def attachment_dir(self) -> Path:
        return (self.cache_dir or self.home / "cache" / "attachments").expanduser()

    @property
    def log_dir(self) -> Path:
        return self.home.expanduser() / "logs"


def load_config(home: Optional[Path] = None) -> AppConfig:
    """Load configuration from ``<home>/config.yaml``.

    Args:
        home: Override home directory. Defaults to ``$KIVRAFS_HOME``.

    Returns:
        AppConfig loaded from disk, or defaults if the file is missing
        or unusable.
    """
    home = (home or Path(KIVRAFS_HOME)).expanduser()
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            data["home"] = home
            return AppConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError, OSError) as exc:
            logger.warning("Failed to load config %s: %s; using defaults", config_file, exc)
    return AppConfig(home=home)
