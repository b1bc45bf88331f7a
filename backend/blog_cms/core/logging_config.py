"""
Structured logging for the Blog CMS backend.
JSON lines in production, coloured single-line output in development.
"""

import json
import logging
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Optional

from blog_cms.core.config import settings

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
})


def redact_email(email: Optional[str]) -> str:
    """Mask the local part of an address so log lines carry no usable PII."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class JSONFormatter(logging.Formatter):
    """Formats records as single-line JSON for log aggregators."""

    def __init__(self, service_name: str = "blog-cms-backend"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": settings.ENVIRONMENT,
            "source": {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Human-readable console output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        message = f"{color}{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}{self.RESET}"

        if record.exc_info:
            message += f"\n{color}{traceback.format_exception(*record.exc_info)[-1].strip()}{self.RESET}"

        return message


def setup_logging(
    service_name: str = "blog-cms-backend",
    log_level: Optional[str] = None,
    json_logs: Optional[bool] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        service_name: Name stamped on JSON records
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Force JSON (True) or coloured (False) output
    """
    level = log_level or ("DEBUG" if settings.DEBUG else "INFO")
    use_json = json_logs if json_logs is not None else (settings.ENVIRONMENT.lower() == "production")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))
    console_handler.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter())
    root_logger.addHandler(console_handler)

    # Third-party noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("blog_cms.logging").info(
        f"Logging configured: level={level}, format={'JSON' if use_json else 'colored'}, "
        f"environment={settings.ENVIRONMENT}"
    )


def generate_request_id() -> str:
    return str(uuid.uuid4())[:8]


class RequestLoggingMiddleware:
    """ASGI middleware that logs one line per request with timing and a request id."""

    def __init__(self, app):
        self.app = app
        self.logger = logging.getLogger("blog_cms.http")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = generate_request_id()
        started = time.perf_counter()
        scope.setdefault("state", {})["request_id"] = request_id
        response_status = 0

        async def send_wrapper(message):
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message["status"]
                message.setdefault("headers", []).append((b"x-request-id", request_id.encode()))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            response_status = 500
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            method = scope.get("method", "UNKNOWN")
            path = scope.get("path", "/")

            if path != "/health":
                log_level = logging.WARNING if response_status >= 400 else logging.INFO
                self.logger.log(
                    log_level,
                    f"{method} {path} {response_status} {duration_ms:.1f}ms",
                    extra={
                        "request_id": request_id,
                        "method": method,
                        "path": path,
                        "status": response_status,
                        "duration_ms": duration_ms,
                    },
                )
