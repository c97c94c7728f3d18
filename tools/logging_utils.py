"""Logging Utilities for Perfect Plate
=====================================

Centralized logging configuration and utilities.

Usage:
    from tools.logging_utils import get_logger

    logger = get_logger(__name__)
    logger.info("✅ Day generated")
    logger.error("❌ Generation failed")

Standards:
    - Backend/operational code: MUST use logger
    - User-facing output: Use print() / rich for the CLI
    - Log levels: CRITICAL, ERROR, WARNING, INFO, DEBUG
    - Configuration: config.LOGGING_CONFIG
    - Location: data/logs/perfect_plate.log (10MB rotation, 5 backups)
"""

import os
import logging
import logging.config

from config import LOGGING_CONFIG, DATA_DIR

_configured = False


def setup_logging():
    """
    Initialize logging configuration once.

    Idempotent - safe to call from every module's get_logger().
    """
    global _configured
    if _configured:
        return
    os.makedirs(str(DATA_DIR / "logs"), exist_ok=True)
    logging.config.dictConfig(LOGGING_CONFIG)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get logger for module.

    Args:
        name: Module name (use __name__)

    Returns:
        Configured logger instance
    """
    setup_logging()
    return logging.getLogger(name)


# Log level mapping for emoji prefixes
LOG_LEVEL_MAPPING = {
    "✅": logging.INFO,      # Success messages
    "⚠️": logging.WARNING,   # Warnings
    "❌": logging.ERROR,     # Errors
    "🔍": logging.DEBUG,     # Debug/info
    "📊": logging.INFO,      # Statistics
    "🔄": logging.INFO,      # Retries / regeneration
}


def log_with_emoji(logger: logging.Logger, message: str):
    """
    Log message with the level implied by its emoji prefix.

    Example:
        log_with_emoji(logger, "⚠️ Day skipped")
        # Logs at WARNING level
    """
    level = logging.INFO
    for emoji, mapped in LOG_LEVEL_MAPPING.items():
        if message.startswith(emoji):
            level = mapped
            break
    logger.log(level, message)
