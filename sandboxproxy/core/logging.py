from __future__ import annotations

import logging
import sys

from sandboxproxy.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; uvicorn reuses it for access logs.
    settings = get_settings()
    root = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root.setLevel(level)
    if any(getattr(handler, "_sandboxproxy", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._sandboxproxy = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # The Kubernetes client logs every request at DEBUG; keep it quiet unless asked.
    logging.getLogger("kubernetes").setLevel(max(level, logging.WARNING))
