"""
Logging setup for pgpair.
Colored console output with timestamps and an optional plain log file.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = '\033[0;32m'
    RED = '\033[0;31m'
    YELLOW = '\033[1;33m'
    RESET = '\033[0m'

    @staticmethod
    def disable():
        """Disable colors."""
        Colors.GREEN = ''
        Colors.RED = ''
        Colors.YELLOW = ''
        Colors.RESET = ''


class ColorFormatter(logging.Formatter):
    """Formats records as '[timestamp] message', colored by level."""

    def __init__(self):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        if record.levelno >= logging.ERROR:
            return f"{Colors.RED}[ERROR] {message}{Colors.RESET}"
        if record.levelno >= logging.WARNING:
            return f"{Colors.YELLOW}[WARNING] {message}{Colors.RESET}"

        timestamp = self.formatTime(record, self.datefmt)
        return f"{Colors.GREEN}[{timestamp}]{Colors.RESET} {message}"


def setup_logger(
    name: str,
    log_file: Optional[Path] = None,
    verbose: bool = False
) -> logging.Logger:
    """
    Create or reconfigure a logger.

    Args:
        name: Logger name
        log_file: Optional file to mirror log output into
        verbose: Log DEBUG records when True

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if not sys.stderr.isatty():
        Colors.disable()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ColorFormatter())
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s: %(message)s'
        ))
        logger.addHandler(file_handler)

    return logger
