import logging
import logging.config
import os
import sys
from collections import deque

from claimfleet.constants import RECENT_LOG_LINES

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/claimfleet.log")


class RecentLogHandler(logging.Handler):
    """Keeps the last N formatted lines around for the dashboard's live log panel."""

    def __init__(self, maxlen: int = RECENT_LOG_LINES) -> None:
        super().__init__()
        self.lines: deque[str] = deque(maxlen=maxlen)
        self.total = 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
            self.total += 1
        except Exception:
            self.handleError(record)

    def since(self, cursor: int) -> tuple[list[str], int]:
        """Lines emitted after ``cursor`` (a previous ``total``), and the new cursor."""
        missed = self.total - cursor
        if missed <= 0:
            return [], self.total
        return list(self.lines)[-missed:], self.total


recent_logs = RecentLogHandler()

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "short": {
            "format": "%(asctime)s %(levelname)s %(message)s",
            "datefmt": "%H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
        "recent": {
            "()": lambda: recent_logs,
            "formatter": "short",
        },
    },
    "loggers": {
        "claimfleet": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file", "recent"],
            "propagate": False, # Don't pass 'claimfleet' logs up to the root logger
        },
        # Shut the log levels for libraries up
        "uvicorn.access": {
             "level": "WARNING", # Quiets the noisy access logs
             "handlers": ["console", "file"],
             "propagate": False,
        },
        "httpx": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "xrpl": {
            "level": "WARNING", # Only show warnings/errors from xrpl-py
            "handlers": ["console", "file"],
            "propagate": False,
        }
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}

def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
