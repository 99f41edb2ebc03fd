from __future__ import annotations

import logging
import sys

from botforge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeat calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, "_botforge_handler", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._botforge_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # SQL echo is too noisy for ledger traffic.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
