"""
gitrescue/config.py -- Settings and logging setup.

Settings are a pydantic-settings model with defaults suitable for a short-lived
CLI-style invocation.  Every field can be overridden with a
``GIT_RESCUE_<FIELD>`` environment variable, e.g.::

    GIT_RESCUE_BACKUP_DIR=/var/backups/git
    GIT_RESCUE_MAX_BACKUPS=5

The default backup directory lives under the platform cache directory
(via platformdirs) so backups never land inside the repository they
protect.
"""

from __future__ import annotations

import logging
import os

from platformdirs import user_cache_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_APP_NAME = "git-rescue"


def default_backup_dir() -> str:
    """Return the platform-appropriate default backup root."""
    return os.path.join(user_cache_dir(_APP_NAME), "backups")


class RescueSettings(BaseSettings):
    """Tunable thresholds and locations."""

    model_config = SettingsConfigDict(env_prefix="GIT_RESCUE_", env_ignore_empty=True)

    backup_dir: str = Field(default_factory=default_backup_dir)
    max_backups: int = Field(default=10, ge=1)

    # Lock files older than these are considered abandoned
    index_lock_threshold_seconds: float = Field(default=60.0, gt=0)
    ref_lock_threshold_seconds: float = Field(default=300.0, gt=0)

    min_free_disk_bytes: int = Field(default=10 * 1024 * 1024, ge=0)
    preflight_interval_seconds: float = Field(default=300.0, ge=0)

    # Per-command timeouts, lightest to heaviest
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    listing_timeout_seconds: float = Field(default=10.0, gt=0)
    scan_timeout_seconds: float = Field(default=30.0, gt=0)
    heavy_timeout_seconds: float = Field(default=120.0, gt=0)


def load_settings(**overrides) -> RescueSettings:
    """Build :class:`RescueSettings`; explicit *overrides* win over the environment.

    Raises
    ------
    pydantic.ValidationError
        If a value cannot be coerced to its field type.
    """
    return RescueSettings(**overrides)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logging for command-line use of git-rescue."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
