"""Logging setup for the pipeline process."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "sysperf.log"

_HANDLER_MARK = "_sysperf_handler"


def configure_logging(
    level: Union[str, int] = "INFO",
    log_format: str = DEFAULT_LOG_FORMAT,
    log_directory: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """Configure root logging to stdout and, optionally, a log file.

    Calling this again replaces the handlers installed by a previous call
    instead of stacking new ones.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(log_format)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_directory is not None:
        log_dir = Path(log_directory)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)

    root.setLevel(level)
    return root
