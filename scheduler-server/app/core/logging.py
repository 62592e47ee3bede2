"""Process-wide logging setup."""

from __future__ import annotations

import logging
import sys

from app.core.config import Settings

_CONFIGURED = False


def configure_logging(settings: Settings) -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.logging.format))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # SQL echo goes through its own logger; keep it quiet unless asked for
    if not (settings.debug or settings.database.echo):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _CONFIGURED = True
