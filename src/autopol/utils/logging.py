import logging
import os
from pathlib import Path
from datetime import datetime
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str,
                 log_dir: Optional[str] = None,
                 level: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with a console handler and an optional file handler.

    Args:
        name: Name of the logger
        log_dir: Directory to store log files (falls back to AUTOPOL_LOG_DIR)
        level: Log level name (falls back to AUTOPOL_LOG_LEVEL, then INFO)

    Returns:
        Configured logger instance
    """
    level_name = (level or os.getenv("AUTOPOL_LOG_LEVEL", "INFO")).upper()
    levelno = getattr(logging, level_name, logging.INFO)
    log_dir = log_dir or os.getenv("AUTOPOL_LOG_DIR")

    logger = logging.getLogger(name)
    logger.setLevel(levelno)

    if logger.handlers:  # Avoid duplicate handlers
        return logger

    log_format = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(levelno)
    console_handler.setFormatter(log_format)
    logger.addHandler(console_handler)

    # File handler, only when a log directory is configured
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = Path(log_dir) / f"{name}_{timestamp}.log"

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(levelno)
        file_handler.setFormatter(log_format)
        logger.addHandler(file_handler)

    return logger
