"""Stock ledger reconstruction and physical count reconciliation.

Importing the package configures the shared ``stock_ledger`` logger. The
level comes from ``STOCK_LEDGER_LOG_LEVEL`` (default ``INFO``) and the rotating
log file lives in ``STOCK_LEDGER_LOG_DIR`` (default ``<project>/.logs``).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_LEDGER_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "stock_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def coerce_level(raw_level: Union[int, str, None]) -> int:
    """Turn ``"warning"``, ``"DEBUG"`` or ``30`` into a logging level, else ``INFO``."""

    if isinstance(raw_level, int):
        return raw_level
    if isinstance(raw_level, str):
        candidate = getattr(logging, raw_level.strip().upper(), None)
        if isinstance(candidate, int):
            return candidate
    return logging.INFO


def _file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        # Read-only checkouts still get console logging.
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(level: Union[int, str, None] = None) -> logging.Logger:
    """Attach the file and console handlers once and apply ``level``.

    Later calls only change the level of the logger and its handlers, so the
    CLI can raise or lower verbosity after import.
    """

    logger = logging.getLogger(__name__)
    resolved = coerce_level(level if level is not None else os.environ.get("STOCK_LEDGER_LOG_LEVEL"))

    if not logger.handlers:
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        for handler in (_file_handler(formatter), console):
            if handler is not None:
                logger.addHandler(handler)

    logger.setLevel(resolved)
    for handler in logger.handlers:
        handler.setLevel(resolved)
    return logger


log = configure_logging()
log.debug("Logger initialized for the 'stock_ledger' package (level %s)", logging.getLevelName(log.level))
