import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional


LOG_FORMAT = "[%(asctime)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

# Server loggers that get the same two handlers as the root.
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
# Libraries that log per frame or per request at DEBUG.
CHATTY_LOGGERS = ("aiohttp", "aiohttp.access", "websockets", "multipart")


def _console_level() -> int:
    name = os.environ.get("ROOMSCRIBE_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(logs_dir: Optional[str] = None) -> str:
    """Send everything to a rotating per-run file (DEBUG) and the console.

    Returns the log file path. Safe to call more than once: handlers are
    replaced, not stacked.
    """
    logs_dir = logs_dir or os.path.join(os.getcwd(), "logs")
    os.makedirs(logs_dir, exist_ok=True)
    log_path = os.path.join(logs_dir, f"server_{datetime.now():%Y-%m-%d_%H-%M-%S}.log")
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)

    to_file = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    to_file.name = "roomscribe_file"
    to_file.setLevel(logging.DEBUG)
    to_console = logging.StreamHandler()
    to_console.name = "roomscribe_stream"
    to_console.setLevel(_console_level())
    for handler in (to_file, to_console):
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for logger in (root, *(logging.getLogger(name) for name in SERVER_LOGGERS)):
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()
        logger.addHandler(to_file)
        logger.addHandler(to_console)
        if logger is not root:
            logger.setLevel(logging.INFO)
            logger.propagate = False

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)

    root.info("Logging initialized: %s (console=%s)", log_path, logging.getLevelName(to_console.level))
    return log_path
