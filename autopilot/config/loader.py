"""Configuration loading and management."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from autopilot.config.models import AutopilotConfig, resolve_env_vars
from autopilot.core.exceptions import ConfigurationError

PROJECT_DIR_NAME = ".autopilot"


def load_config(
    project_config_path: Optional[Path] = None,
    global_config_path: Optional[Path] = None,
) -> AutopilotConfig:
    """Load autopilot configuration from multiple sources.

    Configuration is loaded in the following order (later sources override earlier ones):
    1. Default configuration (built into the models)
    2. Global configuration (~/.config/autopilot/config.yaml)
    3. Project configuration (.autopilot/config.yaml)

    Args:
        project_config_path: Explicit path to project config file
        global_config_path: Explicit path to global config file

    Returns:
        Merged and validated configuration

    Raises:
        ConfigurationError: If configuration is invalid or cannot be loaded
    """
    config_data: Dict[str, Any] = {}

    global_path = global_config_path or _get_global_config_path()
    if global_path and global_path.exists():
        config_data = _merge_config(config_data, _load_yaml_file(global_path))

    project_path = project_config_path or _get_project_config_path()
    if project_path and project_path.exists():
        config_data = _merge_config(config_data, _load_yaml_file(project_path))

    try:
        return AutopilotConfig(**resolve_env_vars(config_data))
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


def save_config(config: AutopilotConfig, config_path: Path) -> None:
    """Save configuration to a YAML file.

    Raises:
        ConfigurationError: If configuration cannot be saved
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_dict = config.model_dump(exclude_none=True, mode="json")

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(
                config_dict,
                f,
                default_flow_style=False,
                sort_keys=False,
                indent=2,
                allow_unicode=True,
            )

    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to save configuration to {config_path}: {e}") from e


def create_default_config() -> AutopilotConfig:
    """Create a default configuration with all default values."""
    return AutopilotConfig()


def validate_config_file(config_path: Path) -> Dict[str, Any]:
    """Validate a configuration file.

    Returns:
        Dictionary with 'valid', 'errors' and 'config' keys

    Raises:
        ConfigurationError: If file cannot be read or parsed
    """
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    config_data = _load_yaml_file(config_path)

    try:
        config = AutopilotConfig(**resolve_env_vars(config_data))
    except ValidationError as e:
        return {
            "valid": False,
            "errors": [str(error) for error in e.errors()],
            "config": None,
        }
    return {"valid": True, "errors": [], "config": config.model_dump(mode="json")}


def get_config_paths() -> Dict[str, Optional[Path]]:
    """Get all possible configuration file paths."""
    return {"global": _get_global_config_path(), "project": _get_project_config_path()}


def _get_global_config_path() -> Optional[Path]:
    """Get the global configuration file path."""
    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "autopilot" / "config.yaml"

    return Path.home() / ".config" / "autopilot" / "config.yaml"


def _get_project_config_path(start: Optional[Path] = None) -> Optional[Path]:
    """Find .autopilot/config.yaml in the start directory or its parents."""
    current = Path(start) if start else Path.cwd()

    for path in [current] + list(current.parents):
        project_dir = path / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir / "config.yaml"

    return None


def _load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML file.

    Raises:
        ConfigurationError: If file cannot be loaded or parsed
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read {file_path}: {e}") from e

    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file must contain a YAML object, got {type(data).__name__}"
        )

    return data


def _merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two configuration dictionaries recursively."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_config(result[key], value)
        else:
            result[key] = value

    return result
