"""Logging configuration for forkfuture.

forkfuture logs through loguru and, like any library, is silent by default.
Records carry the pid of the process that wrote them and the component
(``future``, ``pool``, ``serialization``) that emitted them.

Turn logging on for the lifetime of a pool:

    from forkfuture import ForkPool, LogConfig

    with ForkPool(max_tasks=4, logging=LogConfig(level="DEBUG")) as pool:
        pool.map(crunch, chunks)

or around any block of code:

    handler_ids = enable_logging(LogConfig(file="forkfuture.log"))
    ...
    disable_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from forkfuture.exceptions import ConfigurationError

# Disable by default (library behavior)
logger.disable("forkfuture")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
type LogSetting = LogConfig | bool

LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>pid {process: <7}</magenta> | "
    "<cyan>{extra[component]: <13}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | pid {process: <7} | "
    "{extra[component]: <13} | {name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where and how much forkfuture logs.

    Attributes:
        level: Minimum level for the console sink.
        file: Log file path. The file sink always records DEBUG and up.
        console: Whether to log to stderr.
        rotation: When to rotate the log file (e.g. "50 MB", "1 day").
        retention: Number of rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10

    def __post_init__(self) -> None:
        if self.level not in LOG_LEVELS:
            raise ConfigurationError(
                f"Unknown log level '{self.level}'. Valid: {', '.join(LOG_LEVELS)}"
            )


def _from_forkfuture(record: dict) -> bool:
    # Every forkfuture module logs through logger.bind(component=...).
    name = record["name"] or ""
    return name.startswith("forkfuture") and "component" in record["extra"]


def enable_logging(setting: LogSetting = True) -> list[int]:
    """Add forkfuture's sinks and return their handler ids.

    Args:
        setting: ``True`` for the default ``LogConfig()``, ``False`` for
            nothing, or an explicit ``LogConfig``.

    Returns:
        Handler ids to pass to ``disable_logging``. Empty if no sink was added.
    """
    match setting:
        case False:
            return []
        case True:
            config = LogConfig()
        case LogConfig():
            config = setting
        case _:
            raise ConfigurationError(f"Invalid logging setting: {setting!r}")

    handler_ids: list[int] = []
    if config.console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=CONSOLE_FORMAT,
                colorize=True,
                filter=_from_forkfuture,
            )
        )
    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                compression="zip",
                diagnose=False,
                filter=_from_forkfuture,
            )
        )

    if handler_ids:
        logger.enable("forkfuture")
    return handler_ids


def disable_logging(handler_ids: list[int]) -> None:
    """Remove the given sinks and silence forkfuture again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("forkfuture")
