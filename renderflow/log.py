# renderflow/log.py
from __future__ import annotations

import logging

from .config import LOG_LEVEL


def setup_logger(name: str) -> logging.Logger:
    """Return a console logger for ``name``, configured once."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    # Avoid adding multiple handlers
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    return logger
