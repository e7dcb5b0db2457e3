"""Stored defaults for watch sessions (~/.config/srepl/settings.json)."""

from __future__ import annotations

import json
from pathlib import Path

from srepl.logging import get_logger

logger = get_logger(__name__)

SETTINGS_DIR = Path.home() / ".config" / "srepl"
SETTINGS_PATH = SETTINGS_DIR / "settings.json"

# Session options that may be stored; everything else in the file is ignored
SETTING_KEYS = ("log_path", "debounce_ms", "entry", "python", "source_suffixes")


def _known(data: dict) -> dict:
    return {k: data[k] for k in SETTING_KEYS if data.get(k) is not None}


def load_settings(path: Path | None = None) -> dict:
    """Load stored session defaults.

    A missing file means no defaults. An unreadable file, or one that does
    not hold a JSON object, is reported and treated the same way.
    """
    path = path or SETTINGS_PATH
    if not path.exists():
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring settings file {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring settings file {path}: not a JSON object")
        return {}
    unknown = sorted(set(data) - set(SETTING_KEYS))
    if unknown:
        logger.info(f"Unknown keys in {path}: {', '.join(unknown)}")
    return _known(data)


def save_settings(data: dict, path: Path | None = None) -> Path:
    """Merge data into the stored defaults atomically and return the file path."""
    path = path or SETTINGS_PATH
    merged = load_settings(path)
    merged.update(_known(data))
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(merged, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)
    return path
