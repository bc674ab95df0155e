"""
logging_config.py - Logging setup shared by the reconciliation modules.

Every module grabs its own logger through get_logger(__name__) and writes
pipe-separated event lines, e.g. "phase_complete | step=reconcile_quotes | issues=4".
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

NOISY_LOGGERS = ("uvicorn.access", "httpx", "asyncio")


def _level_from_env(default: int) -> int:
    raw = os.getenv("RECON_LOG_LEVEL", "").strip().upper()
    if not raw:
        return default
    value = logging.getLevelName(raw)
    return value if isinstance(value, int) else default


def setup_logging(level: Optional[int] = None, json_format: bool = False) -> None:
    """Configure the root logger.

    Args:
        level: Logging level. Falls back to RECON_LOG_LEVEL, then INFO.
        json_format: Emit one JSON-ish object per line for log shippers.
    """
    root = logging.getLogger()
    root.setLevel(level if level is not None else _level_from_env(logging.INFO))
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if root.level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
