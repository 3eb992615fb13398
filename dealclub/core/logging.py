"""
Structured logging with request ID support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound request_id for correlation.
- log_event helper for consistent structured logs with safe truncation.
- Quota decisions carry limit/used/period so a denial can be traced to the
  numbers it was made on.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys copied from `extra` into JSON output
_STRUCTURED_KEYS = (
    "subscriber_id",
    "business_id",
    "deal_id",
    "redemption_id",
    "event_type",
    "error_code",
    "reason",
    "limit",
    "used",
    "period",
    "path",
    "method",
    "status",
    "latency_bucket",
)

# Shown inline by PrettyFormatter, in this order
_PRETTY_KEYS = ("subscriber_id", "deal_id", "redemption_id", "reason", "used", "limit", "period")


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    if latency_ms < 10:
        return "<10ms"
    if latency_ms < 100:
        return "10-100ms"
    if latency_ms < 500:
        return "100-500ms"
    if latency_ms < 1000:
        return "500-1000ms"
    return ">=1000ms"

class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for key in _STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        rid_part = f" [rid={rid}]" if rid else ""
        ts = _format_timestamp(record)
        fields = " ".join(
            f"{key}={getattr(record, key)}"
            for key in _PRETTY_KEYS
            if getattr(record, key, None) is not None
        )
        fields_part = f" ({fields})" if fields else ""
        return f"{ts} {record.levelname} [dealclub]{rid_part} {record.getMessage()}{fields_part}"


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("dealclub")
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False

def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    subscriber_id: Optional[str] = None,
    business_id: Optional[str] = None,
    deal_id: Optional[str] = None,
    redemption_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    reason: Optional[str] = None,
    limit: Optional[int] = None,
    used: Optional[int] = None,
    period: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Structured logging helper with safe truncation and request correlation.

    limit/used/period describe the quota a decision was made against; None
    values are omitted so admit and deny records share one shape.
    """

    logger = logging.getLogger("dealclub")
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests)
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "request_id": request_id or get_request_id(),
        "subscriber_id": subscriber_id,
        "deal_id": deal_id,
        "redemption_id": redemption_id,
    }
    optional = {
        "business_id": business_id,
        "event_type": event_type,
        "error_code": error_code,
        "reason": reason,
        "limit": limit,
        "used": used,
        "period": period,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
