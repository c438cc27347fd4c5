"""Logging for ctconf: rich console output plus an optional log file.

Handlers live on the ``ctconf`` package logger; module loggers obtained through
get_logger() propagate to it, so every record is emitted once.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "ctconf"

console = Console(stderr=True)

LOG_FILE = Path("/var/log/ctconf/ctconf.log")
FALLBACK_LOG_FILE = Path("/tmp/ctconf.log")
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_file_handler: Optional[logging.FileHandler] = None


def _package_logger() -> logging.Logger:
    root = logging.getLogger(PACKAGE_LOGGER)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return root


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Also write ctconf log records to a file.

    Args:
        log_file: Target file; defaults to $CTCONF_LOG_FILE, then
            /var/log/ctconf/ctconf.log
        verbose: Log debug records too, including every external command line

    Returns:
        Path of the log file in use (/tmp/ctconf.log when the default
        directory is not writable)
    """
    global _file_handler

    if _file_handler is not None:
        return Path(_file_handler.baseFilename)

    target = Path(log_file or os.getenv("CTCONF_LOG_FILE") or LOG_FILE)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        target = FALLBACK_LOG_FILE

    level = logging.DEBUG if verbose else logging.INFO
    _file_handler = logging.FileHandler(target)
    _file_handler.setLevel(level)
    _file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = _package_logger()
    root.addHandler(_file_handler)
    root.setLevel(level)

    root.info(f"ctconf logging initialized: {target}")
    return target


def get_logger(name: str) -> logging.Logger:
    """Logger for a ctconf module (pass ``__name__``)."""
    _package_logger()
    return logging.getLogger(name)
