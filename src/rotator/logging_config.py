import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/rotator.log")

_HANDLERS = ["console", "file"]

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        # Lap transitions are read by humans watching a run; keep them short
        "lap": {
            "format": "%(asctime)s %(levelname)-6s [lap] %(message)s",
            "datefmt": "%H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "lap_console": {
            "class": "logging.StreamHandler",
            "formatter": "lap",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "rotator": {
            "level": LOG_LEVEL,
            "handlers": _HANDLERS,
            "propagate": False,
        },
        "rotator.laps": {
            "level": LOG_LEVEL,
            "handlers": ["lap_console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
            "level": "WARNING",
            "handlers": _HANDLERS,
            "propagate": False,
        },
        "xrpl": {
            "level": "WARNING",
            "handlers": _HANDLERS,
            "propagate": False,
        },
    },
    "root": {
        "level": "WARNING",
        "handlers": _HANDLERS,
    },
}


def setup_logging(level: str | None = None):
    """Apply the logging configuration."""
    if level:
        LOGGING_CONFIG["loggers"]["rotator"]["level"] = level.upper()
        LOGGING_CONFIG["loggers"]["rotator.laps"]["level"] = level.upper()
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
