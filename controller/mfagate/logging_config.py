"""Logging bootstrap for the controller service."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

RUNTIME_LOG_NAME = "mfagate-runtime.log"


def build_logging_config(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 14,
    transport_level: Optional[str] = None,
) -> Dict[str, Any]:
    """
    dictConfig payload: console plus a daily-rotated runtime file.

    The peripheral transports log every open, SDP lookup and inquiry, so
    ``mfagate.transport`` gets its own level. Raise it to DEBUG when chasing a
    pairing problem without turning the whole service verbose.
    """

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    level = level.upper()
    transport_level = (transport_level or level).upper()
    handler_level = min(logging.getLevelName(level), logging.getLevelName(transport_level))

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": handler_level,
            },
            "runtime_file": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "default",
                "level": handler_level,
                "filename": str(log_dir / RUNTIME_LOG_NAME),
                "when": "midnight",
                "backupCount": max(int(retention_days), 1),
                "utc": True,
                "delay": True,
                "encoding": "utf-8",
            },
        },
        "loggers": {
            "mfagate.transport": {"level": transport_level},
        },
        "root": {"level": level, "handlers": ["console", "runtime_file"]},
    }


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 14,
    transport_level: Optional[str] = None,
) -> None:
    config = build_logging_config(level, log_dir, retention_days, transport_level)
    Path(config["handlers"]["runtime_file"]["filename"]).parent.mkdir(parents=True, exist_ok=True)
    dictConfig(config)


__all__ = ["RUNTIME_LOG_NAME", "build_logging_config", "configure_logging"]
