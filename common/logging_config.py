"""
Centralized logging configuration shared by the api and worker services.
"""

import logging
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "urllib3",
    "google",
    "azure",
]


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    log_format: str = DEFAULT_FORMAT,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level, as an int or a name such as "DEBUG".
        log_file: Optional path of a UTF-8 log file. Console output is always on.
        log_format: Format string for every handler.

    Returns:
        Configured root logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(log_format))
    handlers.append(console_handler)

    logging.basicConfig(level=level, format=log_format, handlers=handlers, force=True)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return logging.getLogger()


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name (typically __name__)."""
    return logging.getLogger(name)
