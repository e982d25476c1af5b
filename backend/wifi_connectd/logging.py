import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

_FIELDS = ("correlation_id", "op", "mode", "ifname", "ssid", "bind", "path", "method", "result_code")

# Substrings of context keys whose values never reach the log.
_SECRET_MARKERS = ("pass", "psk", "secret", "pwd")


def _scrub(context: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in context.items():
        if any(m in str(k).lower() for m in _SECRET_MARKERS):
            out[k] = "***"
        else:
            out[k] = v if isinstance(v, (str, int, float, bool, type(None))) else str(v)
    return out


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line. Errors from this package also contribute their
    ``code`` and a scrubbed copy of their ``context``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in _FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            exc = record.exc_info[1]
            code = getattr(exc, "code", None)
            if isinstance(code, str):
                payload["error_code"] = code
            context = getattr(exc, "context", None)
            if isinstance(context, dict) and context:
                payload["error_context"] = _scrub(context)
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), default=str)


def setup_logging(level: Optional[str] = None) -> None:
    lvl = (level or os.environ.get("WIFI_CONNECT_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
