import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.logging import configure_logging, get_logger, get_trace_id
from .core.metrics import record_http_request
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .routes import ai, health, metrics
from .services.ai.container import ReasoningCore
from .services.ai.engine import NoProvidersAvailableError
from .services.ai.providers import ProviderError

# Configure structured logging
# JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# OTLP export only when OTEL_EXPORTER_OTLP_ENDPOINT is set
configure_tracing()

app = FastAPI(
    title="Intern AI Reasoning Core",
    description="Knowledge-grounded reasoning, provider routing and progressive enforcement",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Build the reasoning core and load providers."""
    logger.info("app_startup_started")

    # Tests install their own core before the app starts
    if getattr(app.state, "core", None) is None:
        # A missing encryption secret raises here and aborts startup
        app.state.core = ReasoningCore.from_env()

    try:
        await app.state.core.registry.initialize()
        logger.info(
            "app_startup_providers_ready",
            providers=list(app.state.core.registry.providers),
        )
    except Exception as e:
        logger.warning(
            "app_startup_providers_unavailable",
            error=str(e),
            error_type=type(e).__name__,
            message="Provider load will be retried on the first request",
        )

    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    trace_id = get_trace_id() or get_trace_id_from_context()
    response = JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "status_code": status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    start_time = getattr(request.state, "start_time", time.time())
    duration = time.time() - start_time

    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, str(exc.detail))

    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=duration,
    )

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(ProviderError)
@app.exception_handler(NoProvidersAvailableError)
async def provider_unavailable_handler(request: Request, exc: Exception):
    """Provider failures surface as a generic retry message."""
    record_exception(exc)
    set_span_status(StatusCode.ERROR, type(exc).__name__)

    logger.error(
        "ai_provider_unavailable",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(
        request,
        503,
        "The AI service is temporarily unavailable. Please try again.",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(request, 500, "Internal server error")


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(ai.router, prefix="/ai", tags=["AI"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
