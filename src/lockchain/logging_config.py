"""Logging setup for the daemon and one-shot runs."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

LOG_FORMAT_ENV = "LOCKCHAIN_LOG_FORMAT"
LOG_LEVEL_ENV = "LOCKCHAIN_LOG_LEVEL"

PLAIN_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    # one JSON object per line, for journald / log shippers
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "target": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level=None, fmt: Optional[str] = None, stream=None) -> None:
    # Replaces any earlier root handlers; arguments win over the environment.
    fmt = (fmt or os.environ.get(LOG_FORMAT_ENV) or "plain").lower()
    level = resolve_level(level if level is not None else os.environ.get(LOG_LEVEL_ENV, "INFO"))

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt="%H:%M:%S"))
    logging.basicConfig(level=level, handlers=[handler], force=True)
