"""Configuration module for alignfn."""

from .config_manager import (
    ConfigManager,
    ConfigValidationError,
    get_config,
)

__all__ = [
    "ConfigManager",
    "ConfigValidationError",
    "get_config",
]
