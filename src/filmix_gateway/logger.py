"""Logging setup shared by the gateway modules.

Plain text by default, JSON lines when ``JSON_LOGS=1``. The current request
id (see ``REQUEST_ID``) is attached to every record emitted while a request
is being served.
"""

from __future__ import annotations

import contextvars
import datetime
import json
import logging
import sys

from src.filmix_gateway.settings import settings

REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

logger = logging.getLogger("filmix-gateway")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] [rid=%(rid)s] %(message)s"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = REQUEST_ID.get("")
        if rid:
            payload["rid"] = rid
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.rid = REQUEST_ID.get("") or "-"
        return True


def setup_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    if settings.json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
    handler.addFilter(_RequestIdFilter())

    level = settings.log_level.upper()
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
