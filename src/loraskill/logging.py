from __future__ import annotations

import logging
import os
from typing import Optional

from rich.logging import RichHandler

_DEF_FMT = "%(message)s"


def setup_logging(level: str | None = None) -> None:
    log_level = (level or os.getenv("LORASKILL_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level,
        format=_DEF_FMT,
        datefmt="%H:%M:%S",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "loraskill")
