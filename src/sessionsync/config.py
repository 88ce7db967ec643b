"""
Sync configuration -- loaded from ``<home>/config.yaml``.

A missing or unreadable file never stops a sync; the defaults are
usable as-is for the GitHub backend once a token is in the environment.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("sessionsync.config")

CONFIG_FILE = "config.yaml"


class BackendType(str, Enum):
    """Supported remote store backends."""

    GITHUB = "github"
    LOCAL = "local"


class SyncConfig(BaseModel):
    """Complete sync configuration for one installation."""

    enabled: bool = True
    backend: BackendType = BackendType.GITHUB

    # GitHub
    repo_name: str = "copilot-session-sync"
    token_env_var: str = "GITHUB_TOKEN"
    api_base: str = "https://api.github.com"
    request_timeout: float = 30.0

    # Local directory acting as the remote
    local_path: Optional[Path] = None

    # Content source
    user_data_dir: Optional[Path] = None
    excluded_workspaces: list[str] = Field(default_factory=list)
    pull_workspace_id: Optional[str] = None

    max_age_days: int = 90
    max_size_mb: int = 50
    sync_interval_minutes: int = 5
    hash_workers: int = 4

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024


def load_config(home: Path) -> SyncConfig:
    """Load configuration from disk, falling back to defaults.

    Args:
        home: SessionSync home directory.

    Returns:
        SyncConfig: Parsed configuration.
    """
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load sync config: %s", exc)
    return SyncConfig()


def save_config(home: Path, config: SyncConfig) -> Path:
    """Persist configuration to ``<home>/config.yaml``."""
    home.mkdir(parents=True, exist_ok=True)
    config_file = home / CONFIG_FILE
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file
