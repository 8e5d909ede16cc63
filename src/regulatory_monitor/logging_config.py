"""Logging setup for the regulatory monitor.

Every module logs through ``get_logger(<module>)`` so a single call to
``setup_logging`` controls the whole ``regulatory_monitor`` namespace.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO, Union


DEFAULT_LOG_DIR = Path("logs")
DEFAULT_LOG_FILE = "regulatory_monitor.log"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "regulatory_monitor"


def resolve_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Turn ``"debug"``/``"WARNING"``/``10`` style values into a logging level."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else default


def setup_logging(
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    console: bool = True,
    format_string: Optional[str] = None,
    to_file: bool = True,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Configure handlers on the ``regulatory_monitor`` logger.

    Args:
        log_file: Log file name or path (default: logs/regulatory_monitor.log)
        log_dir: Directory for relative log files (default: logs/)
        level: Logging level, numeric or by name
        console: Whether to also log to stdout
        format_string: Custom log format string
        to_file: Set to False for console-only logging (the API server)
        stream: Console stream (default: stdout)

    Returns:
        The configured package logger.
    """
    numeric_level = resolve_level(level)
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    destination = "console"
    if to_file:
        directory = log_dir or DEFAULT_LOG_DIR
        if log_file is None:
            log_file = directory / DEFAULT_LOG_FILE
        elif not log_file.is_absolute():
            log_file = directory / log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        destination = str(log_file)

    if console or not to_file:
        console_handler = logging.StreamHandler(stream or sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.propagate = False
    logger.debug("Logging initialized: %s", destination)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the regulatory_monitor namespace.

    Args:
        name: Logger name (typically module or source name)
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
