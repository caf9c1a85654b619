"""
Logging setup for applications embedding the broker.

Library modules only create ``logging.getLogger(__name__)`` loggers; call
``setup_logging`` once from the application entrypoint to route them.
"""

import logging
import sys
from typing import Optional

from rabbit_broker.config import Settings


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None, format_string: Optional[str] = None) -> logging.Logger:
    """
    Configure a stdout handler on the root logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL); defaults
            to ``LOG_LEVEL`` from the environment
        format_string: Custom format string for log messages

    Returns:
        The configured root logger.
    """
    level = level or Settings().log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = [console_handler]

    # The protocol client is chatty at INFO
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)

    return root_logger
