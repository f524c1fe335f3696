"""
Configuration loading with layered overrides.

Implements the configuration precedence chain:
    defaults < config.yml < env vars
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import BoardConfig, ResolutionStrategy

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("config.yml", "config.yaml")


def find_config_path(backlog_path: Path) -> Path | None:
    """
    Locate the configuration file inside a backlog folder.

    Args:
        backlog_path: Backlog root directory

    Returns:
        Path to config.yml (or config.yaml), None if neither exists
    """
    for name in CONFIG_FILENAMES:
        candidate = backlog_path / name
        if candidate.exists():
            return candidate
    return None


def load_yaml_file(path: Path) -> dict[str, Any] | None:
    """
    Load a YAML mapping, returning None if it is missing or invalid.

    Args:
        path: Path to YAML file

    Returns:
        Parsed mapping, or None if the file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
        # Config system should be resilient
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None

    if isinstance(data, dict):
        return data
    if data is not None:
        logger.warning("Ignoring config at %s: top level is not a mapping", path)
    return None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off", "")


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Supported env vars:
        MDBOARD_ACTIVE_BRANCH_DAYS - overrides active_branch_days
        MDBOARD_RESOLUTION_STRATEGY - overrides task_resolution_strategy
        MDBOARD_CHECK_ACTIVE_BRANCHES - overrides check_active_branches

    Args:
        config_dict: Configuration dictionary to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = config_dict.copy()

    if days_str := os.environ.get("MDBOARD_ACTIVE_BRANCH_DAYS"):
        try:
            days = int(days_str)
            if days < 0:
                logger.warning(
                    "MDBOARD_ACTIVE_BRANCH_DAYS must be >= 0, got %s, ignoring", days
                )
            else:
                result["active_branch_days"] = days
        except ValueError:
            logger.warning("Invalid MDBOARD_ACTIVE_BRANCH_DAYS value '%s', ignoring", days_str)

    if strategy_str := os.environ.get("MDBOARD_RESOLUTION_STRATEGY"):
        try:
            result["task_resolution_strategy"] = ResolutionStrategy(strategy_str.strip()).value
        except ValueError:
            logger.warning(
                "Invalid MDBOARD_RESOLUTION_STRATEGY value '%s', ignoring", strategy_str
            )

    if check_str := os.environ.get("MDBOARD_CHECK_ACTIVE_BRANCHES"):
        result["check_active_branches"] = _parse_bool(check_str)

    return result


def load_config(backlog_path: Path) -> BoardConfig:
    """
    Load the configuration for a backlog folder.

    A missing or broken config file never fails the caller: the defaults are
    used and a warning is logged.

    Args:
        backlog_path: Backlog root directory

    Returns:
        Validated BoardConfig
    """
    config_dict: dict[str, Any] = {}

    config_path = find_config_path(backlog_path)
    if config_path is None:
        logger.debug("No config file found in %s, using defaults", backlog_path)
    elif (file_config := load_yaml_file(config_path)) is not None:
        config_dict = file_config

    config_dict = apply_env_overrides(config_dict)

    try:
        return BoardConfig.model_validate(config_dict)
    except ValidationError as e:
        logger.warning("Invalid configuration in %s, using defaults: %s", backlog_path, e)
        return BoardConfig.model_validate(apply_env_overrides({}))
