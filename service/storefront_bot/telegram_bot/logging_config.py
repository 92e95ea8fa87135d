"""
Logging configuration for the storefront bot.
"""

import logging
import sys

def setup_logging():
    """Setup logging with proper format and handlers."""

    # Root of the package logger tree; services log through children of it
    logger = logging.getLogger("storefront_bot")
    logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False

    # python-telegram-bot and httpx are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)

    return logger

# Global logger instance
bot_logger = setup_logging()
