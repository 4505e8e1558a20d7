from __future__ import annotations

import logging

from agentforge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; API and workers share the same format.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    # SQL echo stays off unless explicitly requested through the log level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING if resolved != "DEBUG" else logging.INFO)
