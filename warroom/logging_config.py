"""Warroom logging configuration.

All modules log through the stdlib ``logging`` tree rooted at ``warroom``.
The level comes from ``WARROOM_LOG_LEVEL`` unless an explicit override is
passed. A TRACE level sits below DEBUG for per-tick poll diagnostics.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from warroom.constants import DEFAULT_LOG_LEVEL, ENV_LOG_LEVEL

TRACE = 5
_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

logging.addLevelName(TRACE, "TRACE")


def trace(logger: logging.Logger, msg: str, *args: object) -> None:
    """Log at TRACE level."""
    if logger.isEnabledFor(TRACE):
        logger.log(TRACE, msg, *args)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure Warroom logging.

    Args:
        level: Optional override for `WARROOM_LOG_LEVEL`.
    """
    if level:
        os.environ[ENV_LOG_LEVEL] = level

    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    resolved = TRACE if level_name == "TRACE" else logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger("warroom")
    root.setLevel(resolved)
    if not any(getattr(h, "_warroom_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._warroom_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
