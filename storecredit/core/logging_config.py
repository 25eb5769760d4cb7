# storecredit/core/logging_config.py
import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

STRIPE_LOGGER = "storecredit.stripe"
CRITICAL_LOGGER = "storecredit.critical"


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Configure root logging plus the file-backed stripe / critical loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if log_dir:
        get_file_logger(STRIPE_LOGGER, log_dir, "stripe.log")
        get_file_logger(CRITICAL_LOGGER, log_dir, "critical.log")


def get_file_logger(name: str, log_dir: str, filename: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(log_dir, filename))
        handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        logger.setLevel(logging.INFO)
        logger.addHandler(handler)
    return logger
