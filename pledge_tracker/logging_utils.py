import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from pledge_tracker.metrics import record_http_request


# Set for the lifetime of one HTTP request; empty in the poller and at startup
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

request_logger = logging.getLogger("pledge_tracker.requests")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2024-05-01T18:30:00.123Z"""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class PledgeJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line with ts, level and the active request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = utc_timestamp()
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record, uvicorn's included, to stdout as JSON.

    Request lines come from RequestLoggingMiddleware, so uvicorn's own
    access log is switched off.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(PledgeJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_path(request: Request) -> str:
    """Route template (e.g. /api/paddle-pledges/{tier_cents}) when matched."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id, returns it as X-Request-ID and writes
    one "Request completed" line when the response is ready.

    Line fields: request_id, method, path, status, latency_ms, plus
    payload_bytes, content_type and result for webhook intake.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            self._finish(request, response.status_code, time.perf_counter() - started)
            return response
        finally:
            request_id_ctx.reset(token)

    def _finish(self, request: Request, status_code: int, elapsed: float) -> None:
        # /metrics scrapes are not counted in the metrics they read
        if request.url.path != "/metrics":
            record_http_request(
                method=request.method,
                path=_route_path(request),
                status=status_code,
                latency_seconds=elapsed,
            )

        fields = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status": status_code,
            "latency_ms": round(elapsed * 1000, 2),
        }
        fields.update(getattr(request.state, "webhook_log_data", {}))
        request_logger.log(_level_for(status_code), "Request completed", extra=fields)


def log_webhook_data(request: Request, payload_bytes: int, result: Optional[str] = None) -> None:
    """Stash webhook intake details for the middleware's request line."""
    details = {
        "payload_bytes": payload_bytes,
        "content_type": request.headers.get("content-type"),
    }
    if result is not None:
        details["result"] = result
    request.state.webhook_log_data = details
