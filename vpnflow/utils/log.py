"""Logging setup for the command line."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s:%(lineno)d - %(message)s"


def setup_logging(level: str = "INFO", log_file: Path | None = None, console: Console | None = None) -> None:
    """Send vpnflow logs to the console and, optionally, a rotating file.

    The file always receives DEBUG and up so connection problems can be
    diagnosed after the fact.
    """
    root = logging.getLogger("vpnflow")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console_handler = RichHandler(console=console, show_path=False, rich_tracebacks=False)
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # Use RotatingFileHandler to limit log file size
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)
