"""
Logging helpers for nexzi processes.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# aiortc and aioice log every STUN transaction at INFO
NOISY_LOGGERS = ("aioice", "aiortc", "websockets")


def resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level '{level}'")
    return value


def configure_logging(level: Union[int, str, None] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    resolved = resolve_level(level)
    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=resolved,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if resolved > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(resolved, logging.WARNING))


__all__ = ["configure_logging", "resolve_level"]
