# libs/log.py
"""Process-wide logging setup: console via ``basicConfig`` plus an optional
file handler, same format everywhere."""
from __future__ import annotations

import logging

from libs.config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "api_gateway.log"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    if settings.log_dir is None:
        return

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = (settings.log_dir / LOG_FILE_NAME).resolve()
    root = logging.getLogger()
    # lifespan may run more than once per process (tests, reload)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_path):
            return
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
