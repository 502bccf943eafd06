"""
Configuration loading utilities.
"""

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "ventaudit.yaml"

DEFAULTS: Dict[str, Any] = {
    "storage": {
        "path": str(Path.home() / ".ventaudit" / "projects.json"),
        "write_retries": 1,
    },
    "logging": {
        "level": "WARNING",
    },
    "export": {
        "directory": ".",
    },
}


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from a YAML file merged over the defaults.

    Args:
        config_path: Path to configuration file (default: ventaudit.yaml)

    Returns:
        Configuration dictionary

    Raises:
        ValueError: If the file is not valid YAML or not a mapping
    """
    config = copy.deepcopy(DEFAULTS)
    config_file = Path(config_path or DEFAULT_CONFIG_PATH)

    if not config_file.exists():
        return config

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config {config_file}: {e}")

    if not isinstance(loaded, dict):
        raise ValueError(f"Config {config_file} must be a mapping")

    _merge(config, loaded)
    return config


def get_config_value(config: dict, key_path: str, default: Any = None) -> Any:
    """
    Get configuration value using dot-notation path.

    Args:
        config: Configuration dictionary
        key_path: Dot-separated path (e.g., 'storage.write_retries')
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    value = config
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _merge(base: dict, override: dict) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
