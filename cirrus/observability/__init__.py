"""Logging configuration for cirrus.

Logging is silent by default (library behavior). Applications opt in::

    from cirrus.observability import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", console=True))
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .logger import logger

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to a rotating log file, or None for no file output.
        console: Whether to log to stderr through rich.
        max_bytes: Rotate the log file after this many bytes.
        retention: Number of rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = ".cirrus/cirrus.log"
    console: bool = False
    max_bytes: int = 50 * 1024 * 1024
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Install handlers for ``config`` and return their ids for teardown."""
    logger.remove()
    logger.enable("cirrus")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(sys.stderr, level=config.level, filter="cirrus"))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            max_bytes=config.max_bytes,
            backup_count=config.retention,
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)


__all__ = [
    "LogConfig",
    "LogLevel",
    "logger",
    "setup_logging",
    "teardown_logging",
]
