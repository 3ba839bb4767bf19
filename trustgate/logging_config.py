"""
Structured Logging Configuration

- JSON records in production/staging (the `alert` field drives log-based alerting)
- Request, tenant and user ids carried in context vars set by the middleware
- Redaction: service token, last IPv4 octet, session ids reduced to a prefix
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from trustgate.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="-")
user_id_ctx: ContextVar[str] = ContextVar("user_id", default="-")

SESSION_ID_PREFIX_LEN = 8


def generate_request_id() -> str:
    return str(uuid.uuid4())[:8]


# ═══════════════════════════════════════════
#  Redaction
# ═══════════════════════════════════════════

_SERVICE_TOKEN_PATTERN = re.compile(r'(x-service-token\s*[:=]\s*)\S+', re.I)
_IPV4_PATTERN = re.compile(r'\b(\d{1,3}\.\d{1,3}\.\d{1,3})\.\d{1,3}\b')


def mask_session_id(session_id: str) -> str:
    """Session ids are bearer credentials; logs keep only a prefix."""
    if not session_id:
        return "-"
    return f"{session_id[:SESSION_ID_PREFIX_LEN]}***"


def mask_pii(text: str) -> str:
    text = _SERVICE_TOKEN_PATTERN.sub(r'\1***', text)
    return _IPV4_PATTERN.sub(r'\1.x', text)


# ═══════════════════════════════════════════
#  Formatters
# ═══════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    EXTRA_KEYS = ("alert", "flag_key", "session_id", "duration_ms", "statement")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.000Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_pii(record.getMessage()),
            "request_id": request_id_ctx.get("-"),
            "tenant_id": tenant_id_ctx.get("-"),
            "user_id": user_id_ctx.get("-"),
        }
        for key in self.EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if "session_id" in log_entry:
            log_entry["session_id"] = mask_session_id(str(log_entry["session_id"]))

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry = {k: v for k, v in log_entry.items() if v and v != "-"}
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """Readable formatter for development."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | [%(request_id)s %(tenant_id)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_ctx.get("-")
        record.tenant_id = tenant_id_ctx.get("-")
        return super().format(record)


def setup_logging() -> None:
    """Configure application-wide logging."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.is_production or settings.is_staging:
        handler.setFormatter(JSONFormatter())
        root.setLevel(logging.INFO)
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))
        root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    for name in ("uvicorn.access", "httpcore", "httpx", "celery"):
        logging.getLogger(name).setLevel(logging.WARNING)
