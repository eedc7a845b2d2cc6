"""Logging setup.

The console gets rich-formatted records; the log file gets every record,
including relayed tool output, appended with timestamps.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_PACKAGE_LOGGER = "imx_bootstack"


def configure_logging(
    log_file: Path | None = None,
    level: str = "INFO",
    console: Console | None = None,
) -> logging.Logger:
    """Configure the package logger.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        log_file: Append-only log file; parent directories are created.
        level: Console log level name. The file always records DEBUG.
        console: Rich console to render to (stderr console if omitted).

    Returns:
        The configured package logger.
    """
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.setLevel(logging.DEBUG)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    console_handler.setLevel(level)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        package_logger.addHandler(file_handler)

    return package_logger


__all__ = ["DATE_FORMAT", "LOG_FORMAT", "configure_logging"]
