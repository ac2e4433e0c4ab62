"""Logging setup shared by workers, reapers and the command line."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_log_level(level_name: str | None = None) -> int:
    """Map a level name to a logging level, falling back to WAYPOINT_LOG_LEVEL, then WARNING.

    Unknown names resolve to WARNING rather than failing a worker at startup.
    """

    name = (level_name or os.getenv("WAYPOINT_LOG_LEVEL") or "WARNING").upper()
    level = logging.getLevelName(name)

    return level if isinstance(level, int) else logging.WARNING


def configure_logging(level_name: str | None = None) -> int:
    """Configure logging to stderr for a Waypoint process.

    Levels:
    - DEBUG: every store operation
    - INFO: claims, completions, retries and reaps
    - WARNING: permanent failures, discarded stale outcomes, store outages (default)

    @param level_name: Overrides the WAYPOINT_LOG_LEVEL environment variable
    @return: The level applied
    """

    level = resolve_log_level(level_name)
    logging.basicConfig(level=level, stream=sys.stderr, format=LOG_FORMAT)

    # basicConfig is a no-op once handlers exist; make the level stick anyway
    logging.getLogger().setLevel(level)
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)

    return level


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
