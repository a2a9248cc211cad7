"""Process-wide logging setup shared by the API and the Celery worker."""
from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(debug: bool = False) -> None:
    root = logging.getLogger()
    level = logging.DEBUG if debug else logging.INFO

    # Idempotent: uvicorn reload and celery both call this.
    for handler in root.handlers:
        if getattr(handler, "_promptgate", False):
            root.setLevel(level)
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._promptgate = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)

    # SQL echo goes through sqlalchemy.engine; keep it out of INFO output.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
