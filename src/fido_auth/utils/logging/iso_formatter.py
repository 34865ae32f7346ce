"""JSONL formatter for the system log file."""

from __future__ import annotations

__all__ = ["ISO8601Formatter"]

import json
import logging
from datetime import datetime, timezone


class ISO8601Formatter(logging.Formatter):
    """One JSON object per line, stamped with UTC millisecond time.

    Records logged with a dict message keep its keys at the top level
    ({"time", "level", "event", "message", ...}); string messages land in
    "message". Exception info, when attached, is added as "exception".

    Example line:
        {"time": "2025-01-15T12:00:00.123Z", "level": "ERROR", "event": "cleanup_failed", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, object] = {
            "time": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
        }
        if isinstance(record.msg, dict):
            entry.update(record.msg)
        else:
            entry["message"] = record.getMessage()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)
