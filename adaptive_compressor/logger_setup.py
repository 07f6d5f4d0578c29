"""
Logger Setup Module

Provides a colored console logger, and optional file logging, for the
adaptive compressor.
"""

import logging
import os
from typing import Optional

ROOT_LOGGER = "AdaptiveCompressor"


class LevelColorFormatter(logging.Formatter):
    """
    Formatter that colors only the levelname in console logs.

    Colors:
        DEBUG    -> Gray
        INFO     -> Green
        WARNING  -> Yellow
        ERROR    -> Red
        CRITICAL -> Magenta

    Example:
        12:00:01 | INFO     | PRIMARY met the target at quality 0.71
    """

    COLORS = {
        'DEBUG': '\033[90m',
        'INFO': '\033[92m',
        'WARNING': '\033[93m',
        'ERROR': '\033[91m',
        'CRITICAL': '\033[95m'
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        formatted = super().format(record)
        record.levelname = original_levelname
        return formatted


def setup_logger(
        component: Optional[str] = None,
        log_file: Optional[str] = None,
        level: int = logging.INFO
) -> logging.Logger:
    """
    Return the package logger, or one of its component children.

    Handlers live on the package logger only; component loggers
    (``AdaptiveCompressor.tiling`` etc.) propagate to it.

    Args:
        component (str, optional): Component name, e.g. "orchestrator".
        log_file (str, optional): Path of a file that also receives plain-text logs.
        level (int): Level set on the package logger.

    Returns:
        logging.Logger: Configured logger instance.

    Notes:
        - Handlers are only added once, so repeated calls never duplicate output.
        - A file handler is added the first time a given ``log_file`` is requested.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(LevelColorFormatter(
            "%(asctime)s | %(levelname)-8s | %(message)s", datefmt="%H:%M:%S"
        ))
        root.addHandler(console_handler)

    if log_file and not any(isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)
                            for h in root.handlers):
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        ))
        root.addHandler(file_handler)

    if component is None:
        return root
    return root.getChild(component)
