"""Logging configuration with Rich formatting.

All package loggers live under the ``source_docs`` namespace, so one level setting
covers capture, storage and the stage pipeline without touching third-party loggers.
"""

import logging
from typing import Optional

from rich.logging import RichHandler

from .config import get_settings

PACKAGE_LOGGER = "source_docs"


def setup_logging(level: Optional[str] = None):
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)]
    )
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)

    # Quiet down some noisy libraries
    for name in ("httpx", "openai", "mlflow", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger: get_logger("store") -> source_docs.store."""
    if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
