import logging
import logging.handlers
from pathlib import Path

from .config import Config

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def _rotating_handler(log_file: str, level: int) -> logging.Handler:
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS
    )
    handler.setLevel(level)
    return handler


def setup_logging(debug: bool = False, log_file: str | None = None) -> logging.Logger:
    """Configure the ``luminum`` logger for a daemon or client process.

    Console output follows ``--debug`` (DEBUG, else WARNING). The optional
    log file always keeps INFO and up so enrollment events are recorded.
    """
    config = Config()
    level = logging.DEBUG if debug else config.LOG_LEVEL

    logger = logging.getLogger("luminum")
    logger.setLevel(min(level, logging.INFO) if (log_file or config.LOG_FILE) else level)

    # setup may run more than once per process (tests, CLI re-entry)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setLevel(level)

    log_file = log_file or config.LOG_FILE
    if log_file:
        handlers.append(_rotating_handler(log_file, logging.DEBUG if debug else logging.INFO))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
