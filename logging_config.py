"""
logging_config.py
dictConfig-based logging setup (JSON lines or plain console output).
"""

from __future__ import annotations

import logging
import logging.config
import sys

from config import get_settings


def build_logging_config(level: str = "INFO", json_output: bool = False) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "json_ensure_ascii": False,
            },
            "console": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_output else "console",
                "stream": sys.stdout,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level.upper(),
        },
    }


def configure_logging(config: dict | None = None) -> logging.Logger:
    """
    Configure logging for the application.

    Uses the level and output format from settings unless a full
    dictConfig mapping is given.
    """
    if config is None:
        settings = get_settings()
        config = build_logging_config(settings.log_level, settings.log_json)

    logging.config.dictConfig(config)
    logger = logging.getLogger(__name__)
    logger.debug("Logging configured")
    return logger
