"""
Logging setup for the bot and the rating engine.

The engine logs every store write at DEBUG and every lost confirm/reject race
at WARNING. Submissions and resolutions are INFO.

Environment variables:
- LOG_LEVEL: root level, DEBUG|INFO|WARNING|ERROR|CRITICAL (default INFO)
- SHUTTLE_RANK_LOG_LEVEL: level for the `shuttle_rank` loggers only, so store
  and retry traces can be turned on without gateway chatter
- TEST_MODE: 1/true/yes selects the verbose format when no mode is passed
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Literal, Optional, TextIO

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

PACKAGE_LOGGER = "shuttle_rank"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# third-party loggers that only go below WARNING when the root is at DEBUG
_NOISY = ("discord", "discord.gateway", "aiosqlite")

FMT_VERBOSE = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"
FMT_CONCISE = "%(levelname).1s %(name)s %(message)s"


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name to its numeric value; unknown names give `default`."""
    if not name:
        return default
    return _LEVELS.get(name.strip().upper(), default)


def _test_mode_from_env() -> bool:
    return os.getenv("TEST_MODE", "0").strip().lower() in ("1", "true", "yes")


def setup_logging(
    level: Optional[LogLevel] = None,
    mode: Optional[Literal["test", "prod"]] = None,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """Install a single stream handler on the root logger and return it.

    Args:
        level: Root level name. If omitted, uses LOG_LEVEL or INFO.
        mode: "test" forces the verbose format. If omitted, TEST_MODE decides.
        stream: Where records go; stdout by default.
    """
    numeric_level = level_from_name(level or os.getenv("LOG_LEVEL", "INFO"))
    package_level = level_from_name(os.getenv("SHUTTLE_RANK_LOG_LEVEL"), default=logging.NOTSET)
    if mode is None:
        mode = "test" if _test_mode_from_env() else "prod"

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    is_debug = numeric_level <= logging.DEBUG
    verbose = mode == "test" or is_debug or package_level == logging.DEBUG
    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=FMT_VERBOSE if verbose else FMT_CONCISE, datefmt="%H:%M:%S"))

    root.setLevel(numeric_level)
    root.addHandler(handler)
    logging.getLogger(PACKAGE_LOGGER).setLevel(package_level)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.INFO if is_debug else logging.WARNING)
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
