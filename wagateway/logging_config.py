"""Logging bootstrap: console plus a daily-rotated file in ``LOG_DIR``."""
from __future__ import annotations

import asyncio
import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(log_dir: Path, level: str = "INFO", retention_days: int = 30) -> Path:
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "wagateway.log"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "daily_file": {
                    "class": "logging.handlers.TimedRotatingFileHandler",
                    "formatter": "default",
                    "level": level,
                    "filename": str(log_file),
                    "when": "midnight",
                    "backupCount": max(int(retention_days), 1),
                    "delay": True,
                    "encoding": "utf-8",
                },
            },
            "root": {"level": level, "handlers": ["console", "daily_file"]},
            "loggers": {
                "uvicorn": {"level": level},
                "uvicorn.access": {"level": level},
            },
        }
    )
    return log_file


def log_unhandled_loop_errors(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Event loop exception handler: log and keep serving."""

    logger = logging.getLogger("wagateway.loop")
    exc = context.get("exception")
    message = context.get("message") or "unhandled_exception"
    if exc is not None:
        logger.error("event=unhandled_exception message=%s", message, exc_info=exc)
    else:
        logger.error("event=unhandled_exception message=%s", message)


__all__ = ["LOG_FORMAT", "configure_logging", "log_unhandled_loop_errors"]
