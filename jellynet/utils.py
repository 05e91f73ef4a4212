#!/usr/bin/env python3
"""
Jellynet Utilities Module

This module provides the shared logging setup used throughout the Jellynet
network engine. It consolidates logging configuration so every component
writes the same structured, bracketed log lines.

Functions:
    setup_logging: Configure logging with rotation and custom formatting
    get_logger: Retrieve existing logger instances by name

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import colorama
from colorama import Fore, Style


def _should_use_colors() -> bool:
    """
    Decide whether console output should carry ANSI colours.

    Colours are never used when NO_COLOR is set. They are forced on inside
    Docker (no TTY there, but container log viewers render ANSI) and when
    FORCE_COLOR is set, and otherwise follow whether stdout is a TTY.
    """
    if os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes'):
        return False

    if os.path.exists('/.dockerenv') or os.environ.get('FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        colorama.init(autoreset=True, strip=False, convert=False)
        return True

    if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
        colorama.init(autoreset=True)
        return True

    return False


class BracketFormatter(logging.Formatter):
    """
    Custom log formatter that uses brackets for structured, readable output.

    The bracket format makes logs easy to parse programmatically while
    remaining human-readable. When colours are enabled the level and
    component are colour coded.

    Example:
        Input LogRecord with message "Refreshing interfaces."
        Output: "[2025-01-15 10:30:45 UTC] [system] [DEBUG] [jellynet.network] Refreshing interfaces."
    """

    def __init__(self, use_color_output: bool = False):
        super().__init__()
        self.use_colors = use_color_output

        if self.use_colors:
            self.LEVEL_COLORS = {
                'DEBUG': Fore.CYAN,
                'INFO': Fore.GREEN,
                'WARNING': Fore.YELLOW,
                'ERROR': Fore.RED,
                'CRITICAL': Fore.RED + Style.BRIGHT
            }
            self.COMPONENT_COLOR = Fore.BLUE
            self.TIMESTAMP_COLOR = Fore.WHITE + Style.DIM
            self.USER_COLOR = Fore.MAGENTA
            self.RESET = Style.RESET_ALL
        else:
            self.LEVEL_COLORS = {}
            self.COMPONENT_COLOR = ''
            self.TIMESTAMP_COLOR = ''
            self.USER_COLOR = ''
            self.RESET = ''

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with structured bracket format and optional colors.

        Args:
            record (LogRecord): Log record containing message and metadata

        Returns:
            str: Formatted log message, optionally with ANSI color codes
        """
        # UTC keeps timestamps comparable across hosts
        timestamp = datetime.fromtimestamp(
            record.created,
            tz=timezone.utc
        ).strftime('%Y-%m-%d %H:%M:%S UTC')

        user = getattr(record, 'user', 'system')
        level_color = self.LEVEL_COLORS.get(record.levelname, '')

        formatted = (
            f"{self.TIMESTAMP_COLOR}[{timestamp}]{self.RESET} "
            f"{self.USER_COLOR}[{user}]{self.RESET} "
            f"{level_color}[{record.levelname}]{self.RESET} "
            f"{self.COMPONENT_COLOR}[{record.name}]{self.RESET} "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(log_level: str = "INFO", log_dir: str = "/app/logs") -> logging.Logger:
    """
    Set up logging with rotation and custom formatting.

    This function configures Python's logging system for production use with
    both console and file output. All Jellynet components log through child
    loggers of ``jellynet`` (``jellynet.network``, ``jellynet.config``...) so
    a single configuration covers the whole engine.

    **Log Rotation Explained:**
    Without rotation, log files grow indefinitely. The file handler keeps
    10MB per file and 5 backup files (50MB total maximum), deleting the
    oldest file when the limit is reached.

    **Custom Formatting:**
    `[timestamp] [user] [level] [component] message`

    Args:
        log_level (str): Python logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir (str): Directory path where log files will be stored.
            Created automatically if it doesn't exist.

    Returns:
        logging.Logger: Configured ``jellynet`` logger

    Raises:
        ValueError: If log_level is not a valid Python logging level
        PermissionError: If log directory cannot be created or accessed

    Example:
        ```python
        logger = setup_logging("DEBUG", "./logs")
        logger.info("Network engine starting up")
        # [2025-01-15 10:30:45 UTC] [system] [INFO] [jellynet] Network engine starting up
        ```

    Note:
        This function should only be called once during application startup.
        Repeated calls clear the existing handlers rather than stacking
        duplicates. Use get_logger() to retrieve loggers elsewhere.
    """
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    log_level_upper = log_level.upper()
    if log_level_upper not in valid_levels:
        raise ValueError(f"Invalid log level '{log_level}'. Must be one of: {valid_levels}")

    numeric_level = getattr(logging, log_level_upper)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise PermissionError(f"Cannot create log directory '{log_dir}': {e}")

    logger = logging.getLogger("jellynet")
    logger.setLevel(numeric_level)

    # Clear any existing handlers to prevent duplicate logs on repeated setup
    logger.handlers.clear()

    use_colors = _should_use_colors()
    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(BracketFormatter(use_color_output=use_colors))
    logger.addHandler(console_handler)

    log_file_path = log_path / "jellynet.log"
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB per file
            backupCount=5,
            encoding='utf-8',
            mode='a'
        )
        file_handler.setLevel(numeric_level)
        # Plain formatter for file output (no color codes)
        file_handler.setFormatter(BracketFormatter(use_color_output=False))
        logger.addHandler(file_handler)
    except PermissionError as e:
        logger.error(f"Cannot create log file '{log_file_path}': {e}")
        logger.warning("Continuing with console logging only")

    logger.info("=" * 60)
    logger.info("Jellynet Logging Configuration")
    logger.info("=" * 60)
    logger.info(f"Log Level: {log_level_upper}")
    logger.info(f"Log Directory: {log_dir}")
    logger.info(f"Main Log File: {log_file_path}")
    logger.info(f"Console Colors: {'Enabled' if use_colors else 'Disabled'}")
    logger.info(f"Total Handlers: {len(logger.handlers)}")
    logger.info("=" * 60)

    return logger


def get_logger(name: str = "jellynet") -> logging.Logger:
    """
    Get a logger instance by name.

    Components call this with a dotted child name (for example
    ``jellynet.network``) so their records flow through the handlers
    installed by ``setup_logging``. If logging has not been set up the
    logger still works and falls back to Python's default handling.

    Args:
        name (str): Logger name, defaults to the root ``jellynet`` logger

    Returns:
        logging.Logger: Logger instance
    """
    return logging.getLogger(name)
