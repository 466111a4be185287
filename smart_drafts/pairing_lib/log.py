"""Logging helpers."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# HTTP client loggers that emit one INFO line per tie-break request
CHATTY_LOGGERS = ("httpx", "httpcore")


def parse_level(level: str) -> int:
    """Translate a string log level into logging constant."""
    value = getattr(logging, level.upper(), None)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure root logger for the pairing CLIs.

    The HTTP client loggers stay at WARNING unless DEBUG is requested, so a
    batch log shows step timings and the METRICS line rather than request noise.
    """
    numeric = parse_level(level)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    chatty_level = numeric if numeric <= logging.DEBUG else logging.WARNING
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
