"""
Centralized logging configuration for the service.
"""

import logging
import sys
from typing import List, Optional, Union

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "asyncio")

# Handlers installed by setup_logging; other handlers on the root logger
# (the server's, the test runner's) are left alone.
_installed: List[logging.Handler] = []


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    stream: bool = True,
) -> logging.Logger:
    """
    Configure the root logger with consistent formatting.

    Safe to call more than once: each call replaces the handlers the
    previous call installed.

    Args:
        level: Logging level name or number (default: INFO)
        log_file: Optional path to a log file
        stream: Whether to log to stdout (default: True)

    Returns:
        The configured root logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if stream:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setFormatter(formatter)
        _installed.append(stdout_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return root
