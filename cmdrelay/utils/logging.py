"""Logging setup for cmdrelay processes (API server, executor, reaper CLI)."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "info", *, log_file: str | Path | None = None, fmt: str = DEFAULT_FORMAT) -> None:
    """Configure the `cmdrelay` logger with a stderr handler and an optional file handler.

    Safe to call more than once; handlers installed by a previous call are replaced.
    """
    root_logger = logging.getLogger("cmdrelay")
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.debug("Logging initialized at %s level", level)
