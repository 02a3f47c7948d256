"""
Prometheus metrics for the reasoning core.

Metric families:
- RED metrics for the HTTP surface
- Provider routing: requests, latency, fallbacks, tokens
- Retrieval: knowledge searches by scope and outcome
- Enforcement: violation checks and warnings issued
- Audit: decision log write failures

Naming follows Prometheus conventions (_total for counters, _seconds for
latency histograms).
"""
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

from app.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# HTTP
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
)

# ============================================================================
# PROVIDER ROUTING
# ============================================================================

ai_provider_requests_total = Counter(
    "ai_provider_requests_total",
    "Total number of generation calls per provider",
    ["provider", "status"],  # status: success | error
    registry=registry,
)

ai_provider_latency_seconds = Histogram(
    "ai_provider_latency_seconds",
    "Provider generation latency in seconds",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0],
    registry=registry,
)

ai_provider_fallbacks_total = Counter(
    "ai_provider_fallbacks_total",
    "Number of one-shot fallbacks after a primary provider failure",
    ["from_provider", "to_provider"],
    registry=registry,
)

ai_tokens_total = Counter(
    "ai_tokens_total",
    "Tokens reported by providers",
    ["provider"],
    registry=registry,
)

ai_privacy_fallthrough_total = Counter(
    "ai_privacy_fallthrough_total",
    "Privacy-restricted selections that found no local provider",
    registry=registry,
)

# ============================================================================
# RETRIEVAL
# ============================================================================

knowledge_search_total = Counter(
    "knowledge_search_total",
    "Knowledge store searches",
    ["scope", "status"],  # status: success | degraded
    registry=registry,
)

knowledge_search_latency_seconds = Histogram(
    "knowledge_search_latency_seconds",
    "Embedding + similarity search latency in seconds",
    ["scope"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=registry,
)

# ============================================================================
# ENFORCEMENT & AUDIT
# ============================================================================

ai_violation_checks_total = Counter(
    "ai_violation_checks_total",
    "Violation checks by outcome",
    ["outcome"],
    registry=registry,
)

ai_warnings_issued_total = Counter(
    "ai_warnings_issued_total",
    "Warnings issued",
    ["severity", "escalated"],
    registry=registry,
)

ai_decision_log_failures_total = Counter(
    "ai_decision_log_failures_total",
    "Decision log writes that failed and were swallowed",
    ["action_type"],
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Subject ids in warning history paths are collapsed to keep label
    cardinality bounded:
        /ai/warnings/3f2c... -> /ai/warnings/{subject_id}
    """
    if "?" in path:
        path = path.split("?")[0]

    if path.startswith("/ai/warnings/"):
        return "/ai/warnings/{subject_id}"
    if path.startswith("/ai/providers/") and path.endswith("/test"):
        return "/ai/providers/{name}/test"
    if path.startswith("/ai/documents/"):
        return "/ai/documents/{document_id}"
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_provider_request(
    provider: str,
    success: bool,
    duration_seconds: float,
    total_tokens: Optional[int] = None,
) -> None:
    """Record one generation call against a provider."""
    status = "success" if success else "error"
    ai_provider_requests_total.labels(provider=provider, status=status).inc()
    ai_provider_latency_seconds.labels(provider=provider).observe(duration_seconds)
    if total_tokens:
        ai_tokens_total.labels(provider=provider).inc(total_tokens)


def record_provider_fallback(from_provider: str, to_provider: str) -> None:
    ai_provider_fallbacks_total.labels(
        from_provider=from_provider,
        to_provider=to_provider,
    ).inc()


def record_privacy_fallthrough() -> None:
    ai_privacy_fallthrough_total.inc()


def record_knowledge_search(scope: str, degraded: bool, duration_seconds: float) -> None:
    """
    Record a knowledge search.

    Args:
        scope: "global", "subject" or "any"
        degraded: True when the search failed and returned no results
        duration_seconds: Time spent embedding + querying
    """
    status = "degraded" if degraded else "success"
    knowledge_search_total.labels(scope=scope, status=status).inc()
    knowledge_search_latency_seconds.labels(scope=scope).observe(duration_seconds)


def record_violation_check(outcome: str) -> None:
    ai_violation_checks_total.labels(outcome=outcome).inc()


def record_warning_issued(severity: str, escalated: bool) -> None:
    ai_warnings_issued_total.labels(
        severity=severity,
        escalated=str(escalated).lower(),
    ).inc()


def record_decision_log_failure(action_type: str) -> None:
    ai_decision_log_failures_total.labels(action_type=action_type).inc()


def get_metrics() -> bytes:
    """Prometheus text exposition of the default registry."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
