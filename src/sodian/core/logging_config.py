"""
Sodian Logging Configuration
============================
Loguru setup for applications embedding the knowledge core.

The library itself only calls ``logger.<level>(...)``; sinks are the host
application's choice. ``configure_logging()`` is the default choice:

    from sodian.core.logging_config import configure_logging

    configure_logging(level=config.observability.log_level)

Driver logs (neo4j, httpx under qdrant-client, aiohttp) go through stdlib
logging and are forwarded into loguru.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from loguru import logger

_NOISY_LOGGERS = ("neo4j", "httpx", "httpcore", "aiohttp")

_CONFIGURED = False


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Optional[str] = None,
) -> None:
    """
    Replace loguru's handlers with a single sink.

    Args:
        level: DEBUG / INFO / WARNING / ERROR / CRITICAL. Defaults to
            ``SODIAN_LOG_LEVEL`` or INFO.
        json_format: Serialize records as JSON. Defaults to
            ``SODIAN_LOG_FORMAT=json``.
        sink: Log file path. Defaults to stderr.
    """
    global _CONFIGURED

    if level is None:
        level = os.environ.get("SODIAN_LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.environ.get("SODIAN_LOG_FORMAT", "").lower() == "json"

    logger.remove()

    if json_format:
        logger.add(sink or sys.stderr, level=level.upper(), serialize=True, backtrace=True)
    else:
        logger.add(
            sink or sys.stderr,
            level=level.upper(),
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level>"
            ),
            colorize=sink is None,
            backtrace=True,
            diagnose=False,
        )

    _intercept_standard_logging(level)
    _CONFIGURED = True
    logger.debug(f"Logging configured: level={level}, json_format={json_format}")


class InterceptHandler(logging.Handler):
    """Forward stdlib log records into loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_level = logger.level(record.levelname).name
        except ValueError:
            log_level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(log_level, record.getMessage())


def _intercept_standard_logging(level: str) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # Driver debug output is too chatty below WARNING unless explicitly asked for
    driver_level = level.upper() if level.upper() == "DEBUG" else "WARNING"
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)


def is_configured() -> bool:
    return _CONFIGURED


__all__ = ["configure_logging", "InterceptHandler", "is_configured"]
