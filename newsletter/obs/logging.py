"""
JSON logging for the newsletter service.

One JSON object per line with correlation fields (trace_id, account_id,
newsletter_issue_id, ...) lifted from ``extra``. Subscriber email addresses are
masked when OBS_REDACT_PII is on.
"""
import hashlib
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request

from newsletter.config import settings

# Loggers that are too chatty at INFO for a JSON pipeline
NOISY_LOGGERS = {
    "uvicorn": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


class PIIRedactor:
    """Masks subscriber email addresses."""

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    REPLACEMENT = '[REDACTED_EMAIL]'

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def redact(self, message: str) -> str:
        return self.EMAIL_PATTERN.sub(self.REPLACEMENT, message) if self.enabled else message


class StructuredFormatter(logging.Formatter):
    """Renders records as single-line JSON."""

    CONTEXT_FIELDS = (
        'trace_id', 'account_id', 'idempotency', 'idempotency_key_hash',
        'newsletter_issue_id', 'task_name', 'deleted_count', 'attempts',
        'route', 'method', 'status', 'latency_ms', 'ip',
        'error_type', 'cause_chain',
    )

    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redactor = PIIRedactor(redact_pii)

    def _clean(self, value):
        return self.redactor.redact(value) if isinstance(value, str) else value

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, 'service', 'api'),
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }
        entry.update({
            name: self._clean(getattr(record, name))
            for name in self.CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        })

        if record.exc_info and record.exc_info[0] is not None:
            entry.setdefault("error_type", record.exc_info[0].__name__)
            entry["stack_trace"] = self._clean(self.formatException(record.exc_info))

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging() -> logging.Logger:
    """Install the JSON handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter(settings.OBS_REDACT_PII))
    root.handlers = [handler]

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def fingerprint_key(raw_key: str) -> str:
    """Short stable hash of an idempotency key, safe to log."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()[:12]


def log_request(
    logger: logging.Logger,
    request: Request,
    status_code: int,
    latency_ms: float,
    trace_id: str,
    account_id: Optional[str] = None,
    **kwargs
):
    """Access log line; level follows the status class."""
    extra = dict(
        kwargs,
        service='api',
        route=request.url.path,
        method=request.method,
        status=status_code,
        latency_ms=round(latency_ms, 2),
        trace_id=trace_id,
        account_id=account_id,
        ip=request.client.host if request.client else None,
    )
    level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} -> {status_code}", extra=extra)


def log_worker_task(
    logger: logging.Logger,
    task_name: str,
    status: str,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """Outcome of one background task run."""
    extra = dict(kwargs, service='worker', task_name=task_name, status=status)
    if duration_ms is not None:
        extra['latency_ms'] = round(duration_ms, 2)

    level = logging.ERROR if status == "failure" else logging.INFO
    logger.log(level, f"Task {task_name}: {status}", extra=extra)


def log_error(
    logger: logging.Logger,
    error: Exception,
    trace_id: Optional[str] = None,
    account_id: Optional[str] = None,
    **kwargs
):
    """Error line with the full cause chain and stack trace."""
    from newsletter.obs.errors import error_chain

    extra = dict(
        kwargs,
        service=kwargs.get('service', 'api'),
        trace_id=trace_id,
        account_id=account_id,
        error_type=type(error).__name__,
        cause_chain=error_chain(error),
    )
    logger.error(f"{type(error).__name__}: {error}", exc_info=error, extra=extra)


def generate_trace_id() -> str:
    return str(uuid.uuid4())


def extract_trace_id(request: Request) -> str:
    """X-Request-Id if the caller sent one, else the W3C traceparent trace id, else a new id."""
    request_id = request.headers.get("X-Request-Id")
    if request_id:
        return request_id

    # traceparent: 00-<trace_id>-<span_id>-<flags>
    parts = (request.headers.get("traceparent") or "").split("-")
    if len(parts) >= 2 and parts[1]:
        return parts[1]

    return generate_trace_id()
