"""
Centralized Configuration Manager.

Loads engine settings from environment variables (and a .env file) with safe
defaults and validation.
"""

import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from ..utils.logger import get_logger

logger = get_logger(__name__)

# Create a .env file in your project root to override any key below, e.g.
# OPENAI_API_KEY=sk-...
# TEACHER_MODEL=gpt-4o
load_dotenv()


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class ConfigManager:
    """
    Manages engine configuration, replacing hardcoded magic numbers.
    Loads from environment variables with safe defaults and validation.
    """

    _instance: Optional["ConfigManager"] = None
    _config_cache: Dict[str, Any] = {}

    _DEFAULTS = {
        # Models
        "TEACHER_MODEL": "gpt-4o",
        "STUDENT_BASE_MODEL": "gpt-4o-mini-2024-07-18",
        "OPENAI_BASE_URL": "https://api.openai.com/v1",
        "OPENAI_API_KEY": None,
        "TEMPERATURE": 0.0,
        "MAX_TOKENS": 1024,
        "USE_STRUCTURED_OUTPUT": False,
        # Invocation
        "MAX_REPAIR_ATTEMPTS": 2,
        "PROVIDER_MAX_RETRIES": 3,
        "PROVIDER_BACKOFF_BASE_DELAY": 1.0,
        "PROVIDER_BACKOFF_MAX_DELAY": 30.0,
        # Distillation
        "DISTILLATION_THRESHOLD": 200,
        "STUDENT_FAILURE_WINDOW": 50,
        "STUDENT_FAILURE_MIN_CALLS": 10,
        "STUDENT_FAILURE_RATE_THRESHOLD": 0.2,
        "JOB_POLL_INTERVAL_SECONDS": 60.0,
        # Persistence
        "DATABASE_URL": "sqlite:///./data/alignfn.db",
        # General
        "LOG_LEVEL": "INFO",
        "LOG_DIR": "logs",
    }

    def __init__(self):
        """Initialize ConfigManager and load all values into attributes."""
        self._load_all()

    def _load_all(self):
        """Load all known configuration into instance attributes."""
        for key in list(self._DEFAULTS.keys()):
            setattr(self, key, self.get(key))

        # Cross-field validations
        if self.STUDENT_FAILURE_MIN_CALLS > self.STUDENT_FAILURE_WINDOW:
            raise ConfigValidationError(
                f"STUDENT_FAILURE_MIN_CALLS ({self.STUDENT_FAILURE_MIN_CALLS}) cannot exceed "
                f"STUDENT_FAILURE_WINDOW ({self.STUDENT_FAILURE_WINDOW})"
            )

        if self.PROVIDER_BACKOFF_BASE_DELAY > self.PROVIDER_BACKOFF_MAX_DELAY:
            raise ConfigValidationError(
                f"PROVIDER_BACKOFF_BASE_DELAY ({self.PROVIDER_BACKOFF_BASE_DELAY}) cannot exceed "
                f"PROVIDER_BACKOFF_MAX_DELAY ({self.PROVIDER_BACKOFF_MAX_DELAY})"
            )

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Get configuration value from environment or default with type conversion."""
        if key in cls._config_cache:
            return cls._config_cache[key]

        env_val = os.getenv(key)
        default_val = default if default is not None else cls._DEFAULTS.get(key)

        if env_val is None:
            val = default_val
        else:
            try:
                if isinstance(default_val, bool):
                    val = str(env_val).lower() in ("true", "1", "yes")
                elif isinstance(default_val, int):
                    val = int(env_val)
                elif isinstance(default_val, float):
                    val = float(env_val)
                else:
                    val = env_val
            except (ValueError, TypeError):
                raise ConfigValidationError(
                    f"{key}: Expected {type(default_val).__name__}, got '{env_val}'"
                )

        if key in ("DISTILLATION_THRESHOLD", "STUDENT_FAILURE_WINDOW", "STUDENT_FAILURE_MIN_CALLS",
                   "PROVIDER_MAX_RETRIES") and val is not None:
            if int(val) < 1:
                raise ConfigValidationError(f"{key}: {val} is below minimum")

        if key == "MAX_REPAIR_ATTEMPTS" and val is not None and int(val) < 0:
            raise ConfigValidationError(f"{key}: {val} is below minimum")

        if key == "STUDENT_FAILURE_RATE_THRESHOLD" and val is not None:
            if not 0.0 < float(val) <= 1.0:
                raise ConfigValidationError(f"{key}: {val} must be in (0, 1]")

        cls._config_cache[key] = val
        return val

    @classmethod
    def get_instance(cls) -> "ConfigManager":
        """Get or create singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset the configuration cache and singleton instance."""
        cls._config_cache = {}
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert all configuration to dictionary (secrets masked)."""
        data = {key: getattr(self, key) for key in self._DEFAULTS.keys()}
        if data.get("OPENAI_API_KEY"):
            data["OPENAI_API_KEY"] = "***"
        return data


def get_config() -> ConfigManager:
    """Get the global ConfigManager instance."""
    return ConfigManager.get_instance()
