# app/utils/logging.py
"""
Small logging helper.

Usage:
    from app.utils.logging import configure_logging, get_logger
    configure_logging("info")
    logger = get_logger("ivr-flow-engine.module")

Configures the root logger with a console formatter unless handlers already exist.
"""
import logging
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
APP_LOGGER = "ivr-flow-engine"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    # no-op when the root logger already has handlers
    logging.basicConfig(format=DEFAULT_FORMAT)

    app_logger = logging.getLogger(APP_LOGGER)
    if level:
        app_logger.setLevel(level.upper())
    return app_logger


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    configure_logging()
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(level.upper())
    return logger
