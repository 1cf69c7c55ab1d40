"""Logging setup for the ``deployforge`` entry point.

Called once per CLI invocation. Every module logs through
``logging.getLogger(__name__)`` and inherits this configuration.

Level precedence: ``--log-level`` > ``DEPLOYFORGE_LOG_LEVEL`` > INFO.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# File output is always full detail
_FMT_FILE = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure the root logger: Rich on stderr, optional plain file."""
    numeric_level = _parse_level(level)

    console = RichHandler(
        console=Console(stderr=True),
        show_path=numeric_level <= logging.DEBUG,
        rich_tracebacks=True,
        markup=False,
    )
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)
        effective_level = logging.DEBUG

    root.setLevel(effective_level)

    if numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def _parse_level(level: str | None) -> int:
    if not level:
        return logging.INFO
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric
