"""Logging setup for scripts and examples."""

import logging
from typing import Optional, Union

PACKAGE_LOGGER = "gguf_serve_lite"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_handler: Optional[logging.Handler] = None


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a stream handler to the package logger.

    Calling it again only updates the level.
    """
    global _handler

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if _handler is None or _handler not in logger.handlers:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(_handler)

    return logger
