# xui/logger.py
"""Logging setup for the panel.

Everything logs under the ``xui`` namespace. ``setup_logging`` attaches a
console handler and a size-rotating file handler once; calling it again only
updates the level.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

import config

LOGGER_NAME = "xui"
ROTATE_MAX_BYTES = 2 * 1024 * 1024
ROTATE_BACKUPS = 3
FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def _parse_level(name: str) -> int:
    s = (name or "").strip().upper()
    if s in ("WARN", "WARNING"):
        return logging.WARNING
    if s in ("CRITICAL", "FATAL"):
        return logging.CRITICAL
    if s in ("ERROR", "DEBUG", "INFO"):
        return getattr(logging, s)
    return logging.INFO


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    global _configured
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(_parse_level(level or config.LOG_LEVEL))
    if _configured:
        return root

    fmt = logging.Formatter(FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    log_dir = log_dir or config.LOG_DIR
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "x-ui.log"),
            maxBytes=ROTATE_MAX_BYTES,
            backupCount=ROTATE_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)
    except OSError as e:
        root.warning("file logging disabled, cannot use %s: %s", log_dir, e)

    root.propagate = False
    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)
