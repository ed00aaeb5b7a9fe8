from __future__ import annotations

import logging


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"


def configure_logging(level: str = "info") -> int:
    """Configure the root logger for the server or the agent; returns the numeric level."""
    numeric_level = getattr(logging, (level or "info").upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        force=True,
    )
    return int(numeric_level)
