"""Logging setup: console handler, plus a file handler when LOG_FILE is set."""
from __future__ import annotations

import logging
import os
import sys

from callscribe.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Install handlers on the root logger (replacing earlier ones) at LOG_LEVEL."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    root_logger.setLevel(level if isinstance(level, int) else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if settings.LOG_FILE:
        try:
            log_dir = os.path.dirname(settings.LOG_FILE)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(settings.LOG_FILE, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning("File logging disabled (%s): %s", settings.LOG_FILE, e)
