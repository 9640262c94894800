"""
Logging configuration for sccluster.

This module sets up consistent logging across all pipeline stages,
making it easier to follow a run and debug issues.
"""

import logging
import os
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
PACKAGE_LOGGER = "sccluster"


def _default_level() -> int:
    level = getattr(logging, os.environ.get("SCCLUSTER_LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _root_has_rich_handler() -> bool:
    return any(
        isinstance(handler, RichHandler) for handler in logging.getLogger().handlers
    )


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: setup_logging() installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Direct usage: No RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: SCCLUSTER_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        logger.setLevel(level if level is not None else _default_level())

        if _root_has_rich_handler():
            # CLI mode: root's RichHandler does the output
            pass
        else:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            # Root may carry a basicConfig handler too
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    This function retrieves an existing logger or creates a new one.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def setup_logging(
    level: int = logging.INFO, console: Optional[Console] = None
) -> RichHandler:
    """
    Route all sccluster logging through a Rich handler on the root logger.

    Module loggers created before this call (at import time) carry their own
    StreamHandler; those are removed so output is not duplicated.

    Args:
        level: Logging level applied to root and sccluster loggers
        console: Optional Rich console to render into (default: stderr console)

    Returns:
        RichHandler: The installed handler
    """
    root_logger = logging.getLogger()
    rich_handler = next(
        (h for h in root_logger.handlers if isinstance(h, RichHandler)), None
    )
    if rich_handler is None:
        rich_handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
        )
        rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))
        root_logger.addHandler(rich_handler)

    root_logger.setLevel(level)
    rich_handler.setLevel(level)

    for name, existing in list(logging.Logger.manager.loggerDict.items()):
        if not isinstance(existing, logging.Logger):
            continue
        if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
            continue
        for handler in list(existing.handlers):
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, RichHandler
            ):
                existing.removeHandler(handler)
        existing.propagate = True
        existing.setLevel(level)

    return rich_handler
