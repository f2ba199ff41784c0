"""KPSmart mail delivery network: event log, state, and reports."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("KPSMART_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "kpsmart.log"
LOG_LEVEL = os.environ.get("KPSMART_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger.

    ``KPSMART_LOG_DIR`` moves the log folder and ``KPSMART_LOG_LEVEL`` sets the
    threshold; unknown level names fall back to ``INFO``.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=2_000_000,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: log file '{LOG_FILE}' is unavailable: {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logging ready for the 'kpsmart' package at level %s.", logging.getLevelName(log.level))
