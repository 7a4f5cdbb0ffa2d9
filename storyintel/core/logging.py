"""Structured logging configuration using dictConfig.

Production logs are JSON lines carrying the app and service names as fields,
so ingestor and desk output can share one sink. Per-logger levels come from
``Settings.log_levels`` (e.g. ``LOG_LEVELS='{"storyintel.scoring": "DEBUG"}'``).
"""
import logging
import logging.config
import sys
from typing import Any, Dict, Optional

from .settings import get_settings

# Third-party loggers kept quiet unless overridden
LIBRARY_LEVELS = {
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "httpx": "WARNING",
}


def get_logging_config(service_name: Optional[str] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary."""
    settings = get_settings()
    production = settings.environment == "production"

    static_fields = {"app": settings.app_name}
    if service_name:
        static_fields["service"] = service_name

    console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    if service_name:
        console_format = f"%(asctime)s [{service_name}] [%(levelname)s] %(name)s: %(message)s"

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
                "rename_fields": {"levelname": "level", "name": "logger"},
                "static_fields": static_fields,
            },
            "console": {
                "format": console_format,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if production else "console",
                "stream": sys.stdout,
            }
        },
        "loggers": {
            "storyintel": {
                "level": settings.log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"],
        },
    }

    for name, level in LIBRARY_LEVELS.items():
        config["loggers"][name] = {"level": level, "handlers": ["console"], "propagate": False}

    # Children of "storyintel" propagate to its handler
    for name, level in settings.log_levels.items():
        if name in config["loggers"]:
            config["loggers"][name]["level"] = level.upper()
        elif name.startswith("storyintel."):
            config["loggers"][name] = {"level": level.upper()}
        else:
            config["loggers"][name] = {"level": level.upper(), "handlers": ["console"], "propagate": False}

    return config


def setup_logging(service_name: Optional[str] = None) -> None:
    """Configure structured logging using dictConfig."""
    logging.config.dictConfig(get_logging_config(service_name))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
