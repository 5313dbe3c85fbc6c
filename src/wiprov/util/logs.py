"""Logging setup.

Console sink on stderr plus one file sink per run, both through loguru.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} - [{level}] {message}"


def configure_logging(*, verbose: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level="DEBUG" if verbose else "INFO", colorize=True)


@contextmanager
def run_log(path: Path) -> Iterator[Path]:
    """Mirror every log record into `path` for the duration of a run."""
    path.parent.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(path, format=LOG_FORMAT, level="DEBUG", encoding="utf-8")
    try:
        yield path
    finally:
        logger.remove(sink_id)
