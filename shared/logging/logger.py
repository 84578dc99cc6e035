import logging
import os
from datetime import datetime
from pathlib import Path

LOG_DIR = Path(os.getenv("RECORDER_LOG_DIR", "logs"))

_LOGGERS = {}


def _file_logging_enabled() -> bool:
    return os.getenv("RECORDER_LOG_TO_FILE", "1").strip().lower() not in {"0", "false", "no", "off"}


def get_logger(
    name: str,
    *,
    runtime: str = "recorder",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.scheduler, services.capture.engine)
    - runtime: log file prefix (recorder | scripts)

    File output goes to LOG_DIR (RECORDER_LOG_DIR) unless
    RECORDER_LOG_TO_FILE is set to a false value.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    if _file_logging_enabled():
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        logfile = LOG_DIR / f"{runtime}-{timestamp}.log"

        file_handler = logging.FileHandler(logfile, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
