"""Coloured logging configuration for the regression gate.

This module provides a pre-configured logger with coloured output formatting
so that step boundaries and runner output are readable in CI logs. Colour can
be switched off to honour the same toggle that is passed to the build tools.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
ANSI_ESCAPES = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class LogMessageFilter(logging.Filter):
    """A logging filter to remove problematic control characters from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log records, removing colour escapes and control characters.

        Returns:
            True if the log record should be processed, False otherwise.
        """
        if isinstance(record.msg, str):
            # Runner output arrives with its own colour codes when CARGO_TERM_COLOR=always
            record.msg = CONTROL_CHARS.sub("", ANSI_ESCAPES.sub("", record.msg))
        if record.exc_text:
            record.exc_text = CONTROL_CHARS.sub("", record.exc_text)
        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colour codes to different log levels."""

    # ANSI colour codes
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[90m",  # Grey
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET: ClassVar[str] = "\033[0m"

    def __init__(self, fmt: str = LOG_FORMAT, *, use_colour: bool = True) -> None:
        """Initialise the formatter.

        Args:
            fmt: Log record format string.
            use_colour: Whether to wrap formatted lines in ANSI colour codes.
        """
        super().__init__(fmt)
        self.use_colour = use_colour

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with appropriate colours.

        Returns:
            The formatted log record with appropriate colours.
        """
        formatted = super().format(record)
        colour = self.COLORS.get(record.levelname, "") if self.use_colour else ""
        if colour:
            formatted = f"{colour}{formatted}{self.RESET}"
        return formatted


def colour_enabled(mode: str, stream: object = None) -> bool:
    """Resolve a ``CARGO_TERM_COLOR`` style mode into a yes/no decision.

    Args:
        mode: One of ``always``, ``never`` or ``auto``.
        stream: Stream checked for a TTY in ``auto`` mode (defaults to stderr).

    Returns:
        True if coloured output should be produced.
    """
    mode = mode.lower()
    if mode == "always":
        return True
    if mode == "never":
        return False
    stream = stream if stream is not None else sys.stderr
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


# Create and configure logger with colour formatting
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.DEBUG)
console_handler.setFormatter(ColoredFormatter())
console_handler.addFilter(LogMessageFilter())
logger.addHandler(console_handler)

# Prevent duplicate logs from root logger
logger.propagate = False


def configure_logging(colour_mode: str = "auto", *, verbose: bool = False) -> None:
    """Apply the colour toggle and verbosity to the shared logger."""
    console_handler.setFormatter(ColoredFormatter(use_colour=colour_enabled(colour_mode)))
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def add_file_handler(log_file: Path) -> logging.FileHandler:
    """Attach a plain-text file handler so the full gate log lands next to the report.

    Returns:
        The handler, so callers can detach it again.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.addFilter(LogMessageFilter())
    logger.addHandler(file_handler)
    return file_handler


@contextmanager
def log_group(title: str) -> Generator[None, None, None]:
    """Wrap a block of output in a collapsible group when running under GitHub Actions.

    Yields:
        None while the group is open.
    """
    grouped = os.getenv("GITHUB_ACTIONS") == "true"
    if grouped:
        print(f"::group::{title}", flush=True)  # noqa: T201
    try:
        yield
    finally:
        if grouped:
            print("::endgroup::", flush=True)  # noqa: T201
