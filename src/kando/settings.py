"""User settings YAML read/write."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import config

logger = logging.getLogger(__name__)


class KandoSettings(BaseModel):
    vk_url: str = Field(default="", description="Base URL of the Vibe Kanban service")
    default_project_id: str = ""
    default_executor: str = config.DEFAULT_EXECUTOR
    default_variant: str = config.DEFAULT_VARIANT
    default_branch: str = config.DEFAULT_BRANCH
    vault_path: Path = Field(default_factory=lambda: config.VAULT_PATH)
    cards_folder: str = config.CARDS_FOLDER
    auto_push_on_save: bool = config.AUTO_PUSH_ON_SAVE
    auto_sync_status: bool = config.AUTO_SYNC_STATUS
    debug: bool = False
    poll_base_interval: float = Field(default=config.POLL_BASE_INTERVAL_SECONDS, gt=0)
    poll_max_interval: float = Field(default=config.POLL_MAX_INTERVAL_SECONDS, gt=0)
    max_tracked_tasks: int = Field(default=config.POLL_MAX_TRACKED_TASKS, ge=1)
    request_timeout: float = Field(default=config.VK_REQUEST_TIMEOUT, gt=0)


def default_settings() -> KandoSettings:
    """Defaults from the (env-initialized) config module."""
    config.init()
    return KandoSettings(
        vk_url=config.VK_URL,
        default_project_id=config.DEFAULT_PROJECT_ID,
        vault_path=config.VAULT_PATH,
        cards_folder=config.CARDS_FOLDER,
        debug=config.DEBUG,
        request_timeout=config.VK_REQUEST_TIMEOUT,
    )


def load_settings(path: Optional[Path] = None) -> KandoSettings:
    """Saved settings layered over the defaults; bad files fall back to defaults."""
    path = path or config.SETTINGS_PATH
    defaults = default_settings()
    if not path.exists():
        return defaults
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("settings file is not a mapping")
        return KandoSettings(**{**defaults.model_dump(), **data})
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        logger.warning("Failed to read settings, using defaults: %s", e)
        return defaults


def save_settings(settings: KandoSettings, path: Optional[Path] = None) -> None:
    path = path or config.SETTINGS_PATH
    config.ensure_data_dirs()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(settings.model_dump(mode="json"), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )


def update_setting(key: str, value: Any, path: Optional[Path] = None) -> KandoSettings:
    """Change one field, validate, and persist. Raises ValueError for unknown keys."""
    settings = load_settings(path)
    if key not in KandoSettings.model_fields:
        raise ValueError(f"Unknown setting: {key}")
    updated = KandoSettings(**{**settings.model_dump(), key: value})
    save_settings(updated, path)
    return updated
