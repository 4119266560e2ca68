"""
logging setup for the service.

- LOG level and JSON output come from Settings (REWARDS_LOG_LEVEL, REWARDS_LOG_JSON).
- modules log through logging.getLogger(__name__).
"""
import json
import logging
import sys
from typing import Any


def _json_default(obj: Any):
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return str(obj)


class JsonFormatter(logging.Formatter):
    """single-line JSON records for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def configure_logging(level_name: str = "INFO", use_json: bool = False) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    # avoid duplicate handlers on reload
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("psycopg").setLevel(logging.WARNING)
