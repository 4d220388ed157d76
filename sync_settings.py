#!/usr/bin/env python3
"""
Settings loading for the OneNote → Notion sync tools.

settings.json uses a nested format with "auth", "export" and "import"
sections. Secrets (the Graph client secret and the Notion API key) are never
read from disk; they come from the command line, environment variables or a
hidden prompt.
"""

import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from run_log import logger


SETTINGS_FILENAME = 'settings.json'

# Keys that must never be loaded from or written to settings.json
SECRET_KEYS = {
    'auth': ('client_secret', 'client_secret_value'),
    'import': ('api_key', 'notion_token'),
}

DEFAULT_PROPERTY_NAMES = {
    'title': 'Name',
    'labels': 'Tags',
    'type': 'Type',
    'notebook': 'Notebook',
    'parent': 'Parent',
    'date': 'Created',
    'sync_key': 'Sync Key',
    'attachment': 'Attachment',
    'last_edited': 'Last Edited',
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    'auth': {
        'client_id': None,
        'tenant': 'consumers',
    },
    'export': {
        'output_root': None,
        'include_subpages': True,
        'show_progress': False,
        'max_retries': 10,
        'transient_retries': 3,
        'transient_delay': 2.0,
        'retry_locked': True,
        'watchdog_interval': 0.5,
    },
    'import': {
        'database_id': None,
        'max_per_level': None,
        'request_delay': 0.35,
        'max_upload_mb': 20,
        'properties': dict(DEFAULT_PROPERTY_NAMES),
    },
}


def _get_settings_search_paths() -> List[Path]:
    """Get list of paths to search for settings.json."""
    return [
        Path.cwd() / SETTINGS_FILENAME,
        Path(__file__).parent / SETTINGS_FILENAME,
    ]


def get_settings_path() -> Path:
    """Return the first existing settings.json, or the default location."""
    for path in _get_settings_search_paths():
        if path.exists():
            return path
    return Path.cwd() / SETTINGS_FILENAME


def _strip_secrets(settings: Dict[str, Any]) -> Dict[str, Any]:
    for section, keys in SECRET_KEYS.items():
        values = settings.get(section)
        if not isinstance(values, dict):
            continue
        for key in keys:
            if key in values:
                # SECURITY: never keep secrets loaded from file
                del values[key]
    return settings


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(settings_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load settings from JSON file merged over DEFAULT_SETTINGS.

    A missing or unreadable file yields the defaults. Secrets are always
    stripped.
    """
    if settings_path is None:
        settings_path = get_settings_path()

    if not settings_path.exists():
        logger.debug(f"No settings file at {settings_path} - using defaults")
        return copy.deepcopy(DEFAULT_SETTINGS)

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            raw_settings = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load {settings_path}: {e}")
        return copy.deepcopy(DEFAULT_SETTINGS)

    if not isinstance(raw_settings, dict):
        logger.warning(f"Ignoring {settings_path}: top level must be an object")
        return copy.deepcopy(DEFAULT_SETTINGS)

    logger.debug(f"Loaded settings from: {settings_path}")
    return _merge(DEFAULT_SETTINGS, _strip_secrets(raw_settings))


def save_json(filepath: Path, data: Any, indent: int = 2):
    """Save data to JSON file atomically (temp file + replace)."""
    tmp = filepath.with_suffix(filepath.suffix + '.tmp')
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=indent, ensure_ascii=False, default=str)
    tmp.replace(filepath)
