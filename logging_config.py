"""Logging setup for the encryption tools.

Debug runs get readable lines; everything else gets one JSON object per line.
Only identifiers (table, record id) ever travel in ``extra``.  Plaintext field
values and key material are never passed to a logger.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

from config import get_settings

# Attributes copied from ``extra=`` into the JSON payload when present
CONTEXT_FIELDS = ("table", "record_id")

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "alembic.runtime.migration")


class JSONFormatter(logging.Formatter):
    """Render a record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(debug: bool | None = None, stream: TextIO | None = None) -> None:
    """Replace the root logger's handlers.

    ``debug`` defaults to the configured setting.  Output goes to stderr so it
    never mixes with command output on stdout.
    """
    if debug is None:
        debug = get_settings().debug

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s", "%H:%M:%S")
        if debug
        else JSONFormatter()
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)
