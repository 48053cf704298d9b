"""
Logging Configuration

Provides centralized logging with:
- Rotating file handler (prevents huge log files)
- Console handler for development
- Timestamps and severity levels
- Module-specific loggers

Usage:
    from alignfn.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("Alignment declared")
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logging(
    log_dir: Optional[str] = None,
    log_file: str = "alignfn.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    log_level: Optional[int] = None,
) -> logging.Logger:
    """
    Setup logging with rotating file handler and console output.

    Args:
        log_dir: Directory for log files (defaults to LOG_DIR env var or "logs")
        log_file: Name of the log file
        max_bytes: Maximum size of log file before rotation
        backup_count: Number of backup files to keep
        log_level: Minimum log level to record (defaults to LOG_LEVEL env var)

    Returns:
        Configured package logger
    """
    log_path = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    log_path.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    # Library logging is scoped to the package logger, not the root logger
    package_logger = logging.getLogger("alignfn")
    package_logger.setLevel(log_level)

    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    detailed_formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = RotatingFileHandler(
        filename=log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(simple_formatter)

    package_logger.addHandler(file_handler)
    package_logger.addHandler(console_handler)

    return package_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the specified module.

    Args:
        name: Usually __name__ from the calling module

    Returns:
        Logger instance
    """
    # Lazy initialization so importing the library has no side effects
    package_logger = logging.getLogger("alignfn")
    if not package_logger.handlers:
        setup_logging()

    return logging.getLogger(name)


class SignatureLogger:
    """
    Specialized logger for a single patched function.

    Prefixes every message with the function name and a short fingerprint so
    interleaved calls to different signatures stay readable.
    """

    def __init__(self, name: str, fingerprint: str):
        self.logger = get_logger("alignfn.signature")
        self.name = name
        self.fingerprint = fingerprint

    def _format_message(self, message: str) -> str:
        return f"{self.name}[{self.fingerprint[:8]}]: {message}"

    def info(self, message: str):
        self.logger.info(self._format_message(message))

    def warning(self, message: str):
        self.logger.warning(self._format_message(message))

    def error(self, message: str):
        self.logger.error(self._format_message(message))

    def debug(self, message: str):
        self.logger.debug(self._format_message(message))

    def state_changed(self, old: str, new: str, reason: str = ""):
        """Log a distillation state transition."""
        msg = f"state {old} → {new}"
        if reason:
            msg += f" ({reason})"
        self.info(msg)

    def repair_attempt(self, attempt: int, max_attempts: int, reason: str):
        """Log a repair prompt being issued."""
        self.warning(f"repair {attempt}/{max_attempts} - {reason[:200]}")

    def decode_failed(self, model: str, reason: str):
        """Log an exhausted repair loop."""
        self.error(f"decode failed on {model} after repairs - {reason[:200]}")

    def storage_degraded(self, operation: str, error: str):
        """Log a storage failure that was absorbed."""
        self.warning(f"storage unavailable during {operation}, continuing - {error[:200]}")
