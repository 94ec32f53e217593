from __future__ import annotations

import logging
import sys

from resourcesql.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Route package logs through one stdout handler; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger("resourcesql")
    root.setLevel(resolved)
    if not any(getattr(handler, "_resourcesql", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._resourcesql = True  # type: ignore[attr-defined]
        root.addHandler(handler)
