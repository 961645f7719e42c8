"""Settings storage for default run options."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "OVERLAY_SEPARATOR_SETTINGS_PATH",
        Path.home() / ".config" / "overlay-separator" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_OVERLAY_FILESYSTEM = "ext4"
DEFAULT_OVERLAY_LABEL = "rootfs_data"
DEFAULT_PROMPT_OVERLAY_SIZE = "128MiB"
DEFAULT_TEMP_DIR = "/tmp"

DEFAULT_SETTINGS: dict[str, Any] = {
    "overlay_size": None,
    "overlay_filesystem": DEFAULT_OVERLAY_FILESYSTEM,
    "overlay_label": DEFAULT_OVERLAY_LABEL,
    "temp_dir": DEFAULT_TEMP_DIR,
    "keep_temp": False,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


load_settings()
