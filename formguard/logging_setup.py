"""Logging for the pipeline and the relay service.

Every module logs through a child of the ``formguard`` logger. Records carry a
``trace_id`` (the submission attempt id, or ``-``) so one attempt's security
checks can be followed through the log file.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from formguard.config.constants import LOG_DIR, LOG_FILE_NAME

LOGGER_NAME = "formguard"
LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] [trace=%(trace_id)s] %(message)s"

logger = logging.getLogger(LOGGER_NAME)


# Handlers format %(trace_id)s, so every record must have one even when the
# caller did not go through a LoggerAdapter.
class TraceFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "trace_id"):
            record.trace_id = "-"
        return True


def configure_logging(log_dir: Optional[str] = LOG_DIR, level: int = logging.INFO) -> logging.Logger:
    """Attach the rotating file handler and the console handler once.

    Args:
        log_dir: Directory for ``formguard.log``; ``None`` logs to console only.
        level: Level for the ``formguard`` logger.

    Returns:
        The configured ``formguard`` logger.
    """
    logger.setLevel(level)
    if getattr(logger, "_formguard_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    trace_filter = TraceFilter()

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        # Rotate at 5 MB, keep 5 files
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(trace_filter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(trace_filter)
    logger.addHandler(console_handler)

    logger._formguard_configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return ``formguard.<name>``."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def get_trace_logger(trace_id, name: Optional[str] = None):
    """Return a LoggerAdapter that attaches a trace_id to each LogRecord.

    Use this where a submission attempt id (or other correlation id) is known
    so every message about that attempt can be correlated.
    """
    base = get_logger(name) if name else logger
    return logging.LoggerAdapter(base, {"trace_id": trace_id if trace_id is not None else "-"})
