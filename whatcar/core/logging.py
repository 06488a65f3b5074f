"""
Structured logging for the query service.

Every ``whatcar.*`` logger propagates to a single stdout handler installed on
the package root logger.  The HTTP client libraries log each downstream
request at INFO; they are held at WARNING unless the service runs at DEBUG.
"""
from __future__ import annotations

import logging
import sys

from whatcar.core.config import get_settings

ROOT_LOGGER = "whatcar"
_NOISY_LIBRARIES = ("httpx", "httpcore")


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(handler)
    root.setLevel(level)
    # uvicorn configures the root logger too
    root.propagate = False

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)
    return root


def get_logger(name: str) -> logging.Logger:
    _configure_root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
