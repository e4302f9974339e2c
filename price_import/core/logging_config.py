"""
Logging for the API process and the import worker threads.

Modules log through ``logging.getLogger(__name__)``. Imports run in
background threads, so each line carries the thread name to tell
concurrent operations apart.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional


LINE_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"

# Chatty at INFO while large files stream through.
QUIET_LOGGERS = ("multipart", "sqlalchemy.engine", "chardet", "openpyxl")

_configured_level: Optional[str] = None


def build_logging_config(level: str) -> Dict[str, Any]:
    """dictConfig payload: one stdout handler, quiet third-party loggers."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "import_line": {"format": LINE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "import_line",
            },
        },
        "root": {"handlers": ["stdout"], "level": "WARNING"},
        "loggers": {
            "price_import": {"level": level},
            **{name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        },
    }


def configure_logging(level: Optional[str] = None) -> None:
    """
    Install the logging config once per process.

    Args:
        level: Level for the ``price_import`` loggers, INFO when omitted
    """
    global _configured_level

    if _configured_level is not None:
        return

    _configured_level = (level or "INFO").upper()
    dictConfig(build_logging_config(_configured_level))
