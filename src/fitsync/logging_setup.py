from __future__ import annotations

import logging
import os

from fitsync.settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | int | None = None) -> None:
    """Install the root handler; ``LOG_LEVEL`` in the environment wins over settings."""

    resolved = level or os.getenv("LOG_LEVEL") or settings.get("LOG_LEVEL", "INFO")
    if isinstance(resolved, str):
        resolved = resolved.upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)


__all__ = ["LOG_FORMAT", "configure_logging"]
