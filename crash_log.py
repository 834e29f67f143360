# crash_log.py

import logging
import sys
import traceback
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_LOG_DIR = BASE_DIR / "logs"
LOG_FILE_NAME = "maintenance_tracker.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("maintenance_tracker")


def setup_logging(log_dir: Path | None = None, level: int = logging.INFO) -> Path:
    """
    Attach a file handler to the root logger so every module's
    logging.getLogger(__name__) ends up in the log file. Safe to call twice.
    Returns the log file path.
    """
    log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(level)
    # Avoid duplicate handlers if this gets called more than once
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file.resolve():
            return log_file
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(fh)
    return log_file


def log_exception(exc_type, exc_value, exc_tb):
    """
    Global exception hook: log uncaught exceptions to file and stderr.
    """
    tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))

    try:
        logger.error("Uncaught exception:\n%s", tb_str)
    except Exception:
        # Logging should never crash the crash logger
        pass

    # Also echo to real stderr so you see it if running from console
    try:
        sys.__stderr__.write(tb_str)
        sys.__stderr__.flush()
    except (AttributeError, OSError):
        pass


def log_current_exception(context: str = ""):
    """
    Helper to log inside a try/except block if you manually catch something fatal.
    """
    exc_type, exc_value, exc_tb = sys.exc_info()
    if exc_type is None:
        return
    prefix = f"[{context}] " if context else ""
    tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
    logger.error("%sCaught exception:\n%s", prefix, tb_str)


def install_global_excepthook():
    """
    Install the global excepthook so any uncaught exception is logged.
    """
    sys.excepthook = log_exception
