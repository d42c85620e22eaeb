"""
Logging Configuration for the adaptive search core
Console logging with optional rotating file and JSON output
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import AdaptiveSearchSettings, get_settings

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "adaptive_search.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

FORMATTERS: Dict[str, Dict[str, Any]] = {
    "standard": {
        "format": "%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        "datefmt": DATE_FORMAT,
    },
    "detailed": {
        "format": "%(asctime)s %(levelname)-8s %(name)s %(funcName)s:%(lineno)d | %(message)s",
        "datefmt": DATE_FORMAT,
    },
    "json": {
        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
        "format": "%(asctime)s %(levelname)s %(name)s %(module)s %(lineno)d %(message)s",
    },
}


def _file_handler(settings: AdaptiveSearchSettings) -> Dict[str, Any]:
    directory = Path(settings.log_path)
    directory.mkdir(parents=True, exist_ok=True)
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": settings.log_level,
        "formatter": "json" if settings.structured_logging else "detailed",
        "filename": str(directory / LOG_FILE_NAME),
        "maxBytes": LOG_FILE_MAX_BYTES,
        "backupCount": LOG_FILE_BACKUPS,
        "encoding": "utf8",
    }


def build_logging_config(settings: AdaptiveSearchSettings) -> dict:
    """dictConfig mapping for the ``adaptive_search`` logger tree."""
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": settings.log_level,
            "formatter": "json" if settings.structured_logging else "standard",
            "stream": sys.stdout,
        }
    }
    if settings.log_path:
        handlers["file"] = _file_handler(settings)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": FORMATTERS,
        "handlers": handlers,
        "loggers": {
            "adaptive_search": {
                "level": settings.log_level,
                "handlers": list(handlers),
                "propagate": False,
            },
            # Request lines from the SearXNG client are noise at INFO
            "httpx": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
    }


def setup_logging(settings: Optional[AdaptiveSearchSettings] = None):
    """Apply the logging configuration for ``settings`` (process settings by default)."""
    settings = settings or get_settings()
    logging.config.dictConfig(build_logging_config(settings))

    logger = logging.getLogger("adaptive_search")
    destination = settings.log_path or "console only"
    logger.info(f"Logging configured: level={settings.log_level}, destination={destination}")
