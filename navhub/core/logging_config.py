"""
Logging configuration for the NAV hub backend.

Provides two loggers:
- main_logger: General logging to console (INFO level)
- background_logger: Sync run logging to file (DEBUG level), warnings to console
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from navhub.core.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_FILE = LOG_DIR / "background_tasks.log"
MAIN_LOG_FILE = LOG_DIR / "backend.log"

# Log formats
CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Module-level logger references
_main_logger = None
_background_logger = None


def _rotating_handler(path: Path) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB per file
        backupCount=5,
        encoding="utf-8"
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging():
    """Initialize logging configuration. Should be called once at startup."""
    global _main_logger, _background_logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    # === Main Logger (console output + file) ===
    _main_logger = logging.getLogger("navhub")
    _main_logger.setLevel(logging.DEBUG)
    _main_logger.propagate = False

    # Clear existing handlers to avoid duplicates on reload
    _main_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    _main_logger.addHandler(console_handler)
    _main_logger.addHandler(_rotating_handler(MAIN_LOG_FILE))

    # === Background Logger (file only + warnings to console) ===
    _background_logger = logging.getLogger("navhub.background")
    _background_logger.setLevel(logging.DEBUG)
    _background_logger.propagate = False
    _background_logger.handlers.clear()
    _background_logger.addHandler(_rotating_handler(LOG_FILE))

    console_error_handler = logging.StreamHandler()
    console_error_handler.setLevel(logging.WARNING)
    console_error_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    _background_logger.addHandler(console_error_handler)

    return _main_logger, _background_logger


def get_main_logger() -> logging.Logger:
    """Get the main logger for general operations."""
    global _main_logger
    if _main_logger is None:
        setup_logging()
    return _main_logger


def get_background_logger() -> logging.Logger:
    """Get the background logger for sync runs."""
    global _background_logger
    if _background_logger is None:
        setup_logging()
    return _background_logger


def log_background_start(task_name: str, details: str = ""):
    """
    Log background task start.
    Shows brief message on console + detailed entry in log file.
    """
    main = get_main_logger()
    bg = get_background_logger()

    console_msg = f"[BACKGROUND] {task_name} started"
    if details:
        console_msg += f" ({details})"

    main.info(console_msg)
    bg.info(f"=== {task_name} STARTED === {details}")


def log_background_complete(task_name: str, summary: str = ""):
    """
    Log background task completion.
    Shows brief message on console + detailed entry in log file.
    """
    main = get_main_logger()
    bg = get_background_logger()

    console_msg = f"[BACKGROUND] {task_name} completed"
    if summary:
        console_msg += f" - {summary}"

    main.info(console_msg)
    bg.info(f"=== {task_name} COMPLETED === {summary}")


def log_background_error(task_name: str, error: str):
    """Log background task error: warning on console, error entry in log file."""
    main = get_main_logger()
    bg = get_background_logger()

    main.warning(f"[BACKGROUND] {task_name} failed: {error}")
    bg.error(f"=== {task_name} FAILED === {error}")
