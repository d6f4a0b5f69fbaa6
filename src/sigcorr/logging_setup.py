from __future__ import annotations

import logging
import os

from pythonjsonlogger import jsonlogger


def setup_json_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel((level or os.getenv("SIGCORR_LOG_LEVEL", "INFO")).upper())
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        root.addHandler(handler)
