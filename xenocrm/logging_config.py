"""
Logging configuration for Xeno CRM.

All modules log under the 'xenocrm' logger tree; dispatch runs and vendor
receipts log from worker threads, so the thread name is part of every line.

  Log file : $LOG_DIR/xenocrm.log (LOG_DIR defaults to ./logs)
  Rotation : 5 MB x 3 backups
  Level    : LOG_LEVEL env var, INFO when unset
  Console  : optional stderr mirror (CLI --verbose)

Usage
-----
    from xenocrm.logging_config import configure_logging, log_call

    configure_logging()              # repeat calls are no-ops
    configure_logging(console=True)  # also echo to stderr

    @log_call
    def create_campaign(name, rules, dispatcher):
        ...

Log format per line
-------------------
    2026-10-19 14:32:01 | INFO     | dispatch-0   | xenocrm.engine.dispatcher | Dispatch for campaign 7 drained: 3 attempted, 0 failed
    2026-10-19 14:32:01 | INFO     | MainThread   | xenocrm | OK   create_campaign | 42ms
    2026-10-19 14:32:01 | WARNING  | MainThread   | xenocrm | FAIL create_campaign | EmptyAudience: No customers match the specified rules | 3ms
"""

import functools
import logging
import logging.handlers
import os
import sys
import time
from pathlib import Path

from xenocrm.errors import XenoCRMError

LOGGER_NAME = "xenocrm"

_LOG_DIR = Path(os.environ.get("LOG_DIR", Path(__file__).parent.parent / "logs"))
_LOG_FILE = _LOG_DIR / "xenocrm.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)-12s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_MAX_ARG_CHARS = 120


def configure_logging(console: bool = False) -> logging.Logger:
    """
    Attach the rotating file handler (and optionally a stderr handler) to the
    xenocrm logger. Handlers are only added once per process.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    _LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    return logger


def _short(value) -> str:
    text = repr(value)
    if len(text) > _MAX_ARG_CHARS:
        return text[:_MAX_ARG_CHARS - 3] + "..."
    return text


def log_call(func):
    """
    Trace a function: DEBUG on entry, INFO with elapsed ms on return.

    Failures are re-raised after logging. XenoCRMError subclasses (bad rules,
    empty audience, unknown campaign) are expected outcomes and log at
    WARNING; anything else logs at ERROR.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(LOGGER_NAME)
        name = func.__name__
        start = time.perf_counter()

        if logger.isEnabledFor(logging.DEBUG):
            parts = [_short(a) for a in args] + [f"{k}={_short(v)}" for k, v in kwargs.items()]
            logger.debug(f"CALL {name} | args=({', '.join(parts)})")

        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            level = logging.WARNING if isinstance(exc, XenoCRMError) else logging.ERROR
            logger.log(level, f"FAIL {name} | {type(exc).__name__}: {exc} | {ms}ms")
            raise

        ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"OK   {name} | {ms}ms")
        return result

    return wrapper
