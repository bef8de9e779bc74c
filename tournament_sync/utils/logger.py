import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from tournament_sync.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup a logger for an engine component.

    Console output follows the DEBUG setting; the daily sync log file always
    receives DEBUG records so failed reconciliation passes can be reconstructed.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if Config.LOG_TO_FILE:
        directory = Path(log_dir or Config.LOG_DIR)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = logging.FileHandler(directory / f'tournament_sync_{stamp}.log', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Handlers are attached per component; avoid duplicate lines via the root logger
    logger.propagate = False
    return logger
