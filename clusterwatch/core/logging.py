from __future__ import annotations

import logging

from clusterwatch.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once for scripts and workers; libraries only call getLogger.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    # asyncssh logs every channel open at INFO; keep tunnels quiet unless debugging.
    logging.getLogger("asyncssh").setLevel(max(logging.WARNING, root.level))
