"""
logging_config.py — Logging setup for the order service

All modules log through the standard `logging` tree configured here once, at
application start. Records go to the order log file and to stdout, tagged with
the process id so that several uvicorn workers can share one file.

Order-scoped messages carry an `[Order: <orderNumber>]` prefix; invalid status
changes use an `[InvalidTransition]` marker so operators can grep for them.
"""

import logging
import sys

from . import config

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("pymongo", "uvicorn.access")


def setup_logging(log_file: str | None = None, level: str | None = None):
    """
    Configures the root logger with a file handler and a stdout handler.

    Args:
        log_file (str | None): Log file path; defaults to `config.LOG_FILE`.
        level (str | None): Level name such as "DEBUG"; defaults to `config.LOG_LEVEL`.
    """
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file or config.LOG_FILE),
            logging.StreamHandler(sys.stdout),
        ],
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    """Module logger; use with `__name__`."""
    return logging.getLogger(name)
