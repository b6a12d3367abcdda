import logging
import os
from logging.handlers import RotatingFileHandler

__all__ = ["get_logger"]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
_ROOT_NAME = "upload_data"


def get_logger(name: str = _ROOT_NAME) -> logging.Logger:
    """Return a configured logger. Safe to call multiple times (won't duplicate handlers).

    Module loggers are children of the service logger, so handlers are only
    attached once at the root of that hierarchy.

    Configurable via environment variables:
    - LOG_LEVEL: default INFO
    - BACKEND_LOG_FILE: optional path to enable rotating file logging
    """
    root = logging.getLogger(_ROOT_NAME)
    if not root.handlers:
        root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        fmt = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)

        log_file = os.getenv("BACKEND_LOG_FILE")
        if log_file:
            try:
                fh = RotatingFileHandler(
                    log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
                )
                fh.setFormatter(fmt)
                root.addHandler(fh)
            except OSError:
                # Keep console logging when the file handler can't be created.
                root.exception("Failed to create file log handler for %s", log_file)

    if name == _ROOT_NAME:
        return root
    return root.getChild(name)
