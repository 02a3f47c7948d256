"""
GET /metrics

Prometheus exposition of provider routing, retrieval, enforcement and HTTP
metrics. Unauthenticated, as scrapers expect.
"""
from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse

from app.core.logging import get_logger
from app.core.metrics import get_metrics, get_metrics_content_type

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_class=PlainTextResponse)
async def metrics():
    try:
        payload = get_metrics()
    except Exception as e:
        logger.error(
            "metrics_collection_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        # serve a comment-only body so the scrape itself still succeeds
        payload = b"# metrics collection failed\n"
    return Response(content=payload, media_type=get_metrics_content_type())
