"""
Request context middleware.

- Reuses X-Trace-ID / X-Request-ID from the caller or generates them
- Binds trace/request/operator ids into the logging context
- Records HTTP RED metrics and echoes the ids in response headers
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    generate_request_id,
    generate_trace_id,
    get_logger,
    set_request_id,
    set_trace_id,
    set_user_id,
)
from .metrics import record_http_request
from .tracing import get_trace_id_from_context

logger = get_logger(__name__)


def _uuid_format(hex_id: str) -> str:
    return f"{hex_id[0:8]}-{hex_id[8:12]}-{hex_id[12:16]}-{hex_id[16:20]}-{hex_id[20:32]}"


class TraceIDMiddleware(BaseHTTPMiddleware):
    """Attach trace context to every request and its log lines."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Priority: X-Trace-ID > X-Request-ID > OpenTelemetry span > new id
        trace_id = request.headers.get("X-Trace-ID") or request.headers.get("X-Request-ID")
        if not trace_id:
            otel_trace_id = get_trace_id_from_context()
            if otel_trace_id and len(otel_trace_id) == 32:
                trace_id = _uuid_format(otel_trace_id)
            else:
                trace_id = generate_trace_id()

        request_id = generate_request_id()
        operator_id = request.headers.get("X-User-ID")

        set_trace_id(trace_id)
        set_request_id(request_id)
        if operator_id:
            set_user_id(operator_id)

        start_time = time.time()
        request.state.start_time = start_time
        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=500,
                duration_seconds=process_time,
            )
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int(process_time * 1000),
                exc_info=True,
            )
            raise
        else:
            process_time = time.time() - start_time
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration_seconds=process_time,
            )
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=int(process_time * 1000),
            )
            response.headers["X-Trace-ID"] = trace_id
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            set_trace_id(None)
            set_request_id(None)
            set_user_id(None)
