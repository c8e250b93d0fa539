"""
Logging setup for the NPU assistant.

Modules log through ``logging.getLogger(__name__)``; applications call
``setup_logging()`` once at startup. The level defaults to the
``NPU_ASSISTANT_LOG_LEVEL`` environment variable, then INFO.
"""

import logging
import os
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Pillow logs every plugin import at DEBUG
_QUIET_LOGGERS = ("PIL",)


def setup_logging(
    level: Optional[Union[int, str]] = None,
    fmt: str = DEFAULT_FORMAT,
    stream=None,
) -> None:
    """
    Configure root logging for the ``npu_assistant`` package.

    Args:
        level: Log level name or number. Falls back to
            ``NPU_ASSISTANT_LOG_LEVEL`` and then ``INFO``.
        fmt: Log record format
        stream: Output stream (defaults to stderr)
    """
    level = level or os.getenv("NPU_ASSISTANT_LOG_LEVEL") or "INFO"
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt=DEFAULT_DATEFMT,
        stream=stream or sys.stderr,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for ``name``."""
    return logging.getLogger(name)
