"""
Logging setup shared by the API, the import driver and the polling CLI.

Everything goes through a single console (stderr) handler:

    2024-03-01 12:00:00 | INFO    | baseoff_import.domain.imports.driver | Job 3f2a...: processing rows [0, 30000) of 81234 (csv)
"""
from __future__ import annotations

from logging.config import dictConfig
from typing import Any, Dict, Optional

APP_LOGGER = "baseoff_import"

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO/DEBUG.
QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "httpcore")

_is_configured = False


def build_logging_config(level: str) -> Dict[str, Any]:
    """dictConfig schema for ``level``; third-party clients are capped at WARNING."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "pipeline": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "pipeline",
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            APP_LOGGER: {"level": level},
            **{name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        },
    }


def configure_logging(level: Optional[str] = None) -> None:
    """
    Install the console handler once per process.

    Args:
        level: Log level name; defaults to INFO.
    """
    global _is_configured

    if _is_configured:
        return

    dictConfig(build_logging_config(level or "INFO"))
    _is_configured = True
