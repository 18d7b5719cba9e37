"""Logging setup shared by the API process and the CLI entry point.

Usage:
    from fintrack.log_config import setup_logging
    setup_logging("INFO")
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
HANDLER_NAME = "fintrack-console"

NOISY_LOGGERS = [
    "multipart",
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
]


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Attach one console handler to the root logger.

    Safe to call more than once; the handler is only added the first time.
    """
    resolved_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved_level)

    if not any(handler.get_name() == HANDLER_NAME for handler in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root_logger
