"""
Logging configuration module.

One "paygate" logger writes to the console and to a per-day file;
modules log through logging.getLogger(__name__).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "paygate"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "web3", "urllib3", "anthropic")

# HHMMSS of the first handler created in this process
_PROCESS_START_TIME: Optional[str] = None


def _today() -> str:
    return datetime.now().strftime("%Y%m%d")


class DailyRotatingFileHandler(logging.FileHandler):
    """
    File handler that switches files when the calendar day changes.

    Files are named {prefix}_YYYYMMDD_<START_HHMMSS>.log; the start time
    stays fixed for the life of the process so all of a run's files
    sort together.
    """

    def __init__(self, log_dir: str = "logs", encoding: str = "utf-8", prefix: str = LOGGER_NAME):
        global _PROCESS_START_TIME

        if _PROCESS_START_TIME is None:
            _PROCESS_START_TIME = datetime.now().strftime("%H%M%S")

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self._start_hhmmss = _PROCESS_START_TIME
        self._current_date = _today()

        super().__init__(self._path_for(self._current_date), mode="a", encoding=encoding)

    def _path_for(self, date_str: str) -> str:
        return str(self.log_dir / f"{self.prefix}_{date_str}_{self._start_hhmmss}.log")

    def emit(self, record: logging.LogRecord) -> None:
        today = _today()
        if today != self._current_date:
            self.close()
            self._current_date = today
            self.baseFilename = self._path_for(today)
            self.stream = self._open()

        super().emit(record)


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> logging.Logger:
    """
    Configure the "paygate" logger and return it.

    Safe to call more than once: existing handlers are closed and
    replaced.

    Args:
        log_level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL);
            unknown names fall back to INFO
        log_dir: Directory for the daily log files

    Returns:
        logging.Logger: Configured logger instance
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = DailyRotatingFileHandler(log_dir=log_dir)

    for handler in (logging.StreamHandler(), file_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger.info(f"Logging started - level: {logging.getLevelName(level)}, file: {file_handler.baseFilename}")

    return logger
