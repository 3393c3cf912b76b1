import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Client libraries that log every request at INFO/DEBUG
NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "httpcore", "openai", "psycopg.pool")


def setup_logging(log_level: str = "INFO", data_dir: str = "/app/data") -> logging.Logger:
    """Rotating file log at <data_dir>/worker/log.log plus console output"""
    log_dir = Path(data_dir) / "worker"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("hand_worker")
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Re-initialization replaces handlers instead of stacking them
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s'
    )

    log_file = log_dir / "log.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Library chatter stays out unless the worker itself runs at DEBUG
    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger.info(f"Logging initialized. Log file: {log_file} (pid {os.getpid()})")
    return logger


def log_exception(logger: logging.Logger, message: str) -> None:
    """Log an error message together with the active traceback"""
    logger.error(message, exc_info=True)
