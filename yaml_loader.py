import copy
import logging
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger("yaml_loader")

DEFAULT_CONFIG: Dict[str, Any] = {
    "web": {"host": "0.0.0.0", "port": 8000},
    "recipes": {"data_path": "./data/recipes"},
    "commands": {"max_queue_size": 1000, "max_retries": 2, "transmit_timeout": 10.0},
    "extensions": {"lutron": {"suppress_delay_ms": 2000}},
    "devices": {"connect": True, "reconnect_backoff": 5.0, "reconnect_backoff_max": 300.0},
    "logging": {"level": "INFO", "file": "logs/controller.log", "loggers": {}},
    "inventory": {"devices": [], "scenes": []},
}


def load_yaml_config(filepath: Path) -> dict:
    """
    Loads configuration data from a YAML file.

    Args:
        filepath (Path): The path object pointing to the YAML configuration file.

    Returns:
        dict: The loaded configuration as a dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If there is an issue parsing the YAML content.
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found at: {filepath}")

    try:
        with open(filepath, 'r') as f:
            config_data = yaml.safe_load(f)
        return config_data if config_data is not None else {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file: {e}")
        raise
    except IOError as e:
        logger.error(f"Error reading config file: {e}")
        raise


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def load_config(filepath: Path) -> Dict[str, Any]:
    """Load the config file on top of DEFAULT_CONFIG. A missing file means defaults."""
    if not filepath.exists():
        logger.warning(f"No config file at {filepath}, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)
    return merge_config(DEFAULT_CONFIG, load_yaml_config(filepath))


def get_conf(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a dotted path, e.g. get_conf(cfg, "commands.max_retries")."""
    node: Any = config
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node
