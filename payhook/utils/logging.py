"""
Structured JSON logging with correlation IDs and job context.

Every log line is JSON with: timestamp, level, service, correlation_id, module,
message, plus whichever pipeline fields are known (webhook, Stripe event, job,
topic, worker, organization).

Correlation IDs come from the request middleware in the API and from the
stored webhook (or a fresh id per job) in workers. The worker pool binds the
job it is running with bind_log_context(), so every line logged while the job
runs carries job_id/topic/worker_id without threading extra= through each call.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
log_context_ctx: ContextVar[dict] = ContextVar("log_context", default={})

EXTRA_FIELDS = (
    "webhook_id",
    "stripe_event_id",
    "event_type",
    "job_id",
    "topic",
    "worker_id",
    "organization_id",
    "error_code",
)

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    """Set the correlation ID in the current context."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


def bind_log_context(reset: bool = False, **fields: Any) -> None:
    """
    Attach pipeline fields to every log line in the current task.

    reset=True starts from an empty context (a consumer picking up its next
    job); otherwise the fields are added to what is already bound. None values
    are dropped. Unknown field names are ignored by the formatter.
    """
    current = {} if reset else dict(log_context_ctx.get())
    current.update({k: v for k, v in fields.items() if v is not None})
    log_context_ctx.set(current)


def get_log_context() -> dict:
    return dict(log_context_ctx.get())


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Output format:
    {"timestamp": "...", "level": "INFO", "service": "worker", "correlation_id": "...",
     "module": "...", "message": "...", "job_id": "...", ...}

    Fields passed with extra= win over the bound context.
    """

    def __init__(self, service: Optional[str] = None):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if self.service:
            log_entry["service"] = self.service

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        bound = log_context_ctx.get()
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is None:
                val = bound.get(key)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO", service: Optional[str] = None) -> None:
    """
    Replace default logging with structured JSON logging.
    Call once at process startup before any log calls; service is "api" or "worker".
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter(service=service))
    root_logger.addHandler(stream_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
