"""
Configuration loading for mdboard.

Reads the backlog's config.yml, layers environment overrides on top and
exposes the result as a validated BoardConfig.
"""

from .loader import (
    apply_env_overrides,
    find_config_path,
    load_config,
    load_yaml_file,
)
from .models import BoardConfig, Milestone, ResolutionStrategy

__all__ = [
    "BoardConfig",
    "Milestone",
    "ResolutionStrategy",
    "apply_env_overrides",
    "find_config_path",
    "load_config",
    "load_yaml_file",
]
