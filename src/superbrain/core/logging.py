"""
Logging configuration.

All package loggers hang off "superbrain". Console output goes to stderr so
CLI results on stdout stay clean; the CLI adds a log file in the data dir.
"""

import logging
import sys
from pathlib import Path

ROOT_LOGGER = "superbrain"

# Chatty at INFO: one line per HTTP request / filesystem event
NOISY_LOGGERS = ("httpx", "httpcore", "watchdog", "anthropic", "aiosqlite")


def setup_logging(
    level: int = logging.INFO,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure the package logger. Safe to call more than once."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    third_party = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child of the package logger, e.g. get_logger("brain.memory")."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
