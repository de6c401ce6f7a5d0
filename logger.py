"""
Logging setup shared by every LFG module.

Console output stays short; an optional file log carries logger names and dates.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

_CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
_FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, log_file: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Logger for one LFG module, built once per name.

    Every module calls this at import with config.LOG_FILE and config.LOG_LEVEL.
    The console shows `level` and above in a short time-only format. When
    `log_file` is set, the file receives DEBUG too, so idle timers, filter
    skips and cache sizes can be traced after the fact.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # tests import modules repeatedly; handlers are attached only the first time
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(file_handler)
        # file handler must see DEBUG even when the console is quieter
        logger.setLevel(logging.DEBUG)

    return logger


def quiet_library_loggers(names, level: int = logging.WARNING) -> None:
    """Lower third-party loggers (discord.gateway, sqlalchemy.engine, ...)."""
    for n in names:
        logging.getLogger(n).setLevel(level)
