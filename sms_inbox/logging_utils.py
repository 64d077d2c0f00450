# --------------------------------------------------
# logging_utils.py
# --------------------------------------------------
# One JSON object per line on stdout.
#
# Call sites log dicts:
#
#     logger.info({"event": "webhook_processed", "id": ..., "duplicate": False})
#
# and the formatter stamps ts / level / logger on top. Plain
# string messages end up under "msg". Message bodies are
# personal data, so call sites pass them through preview().
# --------------------------------------------------

import json
import logging
import sys
from datetime import datetime, timezone

PREVIEW_CHARS = 50

# Access lines would duplicate what RequestLoggingMiddleware emits.
QUIET_LOGGERS = ("uvicorn.access",)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JSONLineFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def format(self, record):
        entry = {"ts": _timestamp(), "level": record.levelname, "logger": record.name}

        fields = record.msg if isinstance(record.msg, dict) else {"msg": record.getMessage()}
        entry.update(fields)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO"):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLineFormatter())

    root = logging.getLogger()
    # Replace, never stack.
    root.handlers = [handler]
    root.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).disabled = True


def preview(text: str) -> str:
    if text is None:
        return ""
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."
