# proposalai/logging_config.py

"""
Logging setup shared by the engine and the cron scripts.

Call setup_logging() once at startup; modules then use
``logging.getLogger(__name__)``. Errors are additionally appended to the
error log file so operators can inspect failed passes after the fact.
"""

import logging
import os
import sys

from proposalai.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_initialized = False


def setup_logging(level: str = None, log_file: str = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = level or settings.LOG_LEVEL
    log_file = log_file if log_file is not None else settings.LOG_FILE

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    # ── Error log ──────────────────────────────────────────────────────────────
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.ERROR)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("proposalai").info(
        "Logging configured: level=%s%s", level, f", error log={log_file}" if log_file else ""
    )


def cron_logger(path: str = None) -> logging.Logger:
    """Logger that appends one line per scheduler invocation."""
    path = path or settings.CRON_LOG_FILE
    clog = logging.getLogger("proposalai.cron")
    if not clog.handlers:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = logging.FileHandler(path)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(message)s"))
        clog.addHandler(fh)
    clog.setLevel(logging.INFO)
    return clog
