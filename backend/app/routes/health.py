"""
Health check endpoints.
"""
from fastapi import APIRouter, Request

from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/providers")
async def providers_health(request: Request):
    """
    Provider registry status.

    Returns:
        - initialized: whether the registry has loaded its providers
        - providers: loaded provider kinds in routing order
        - local_providers: loaded providers that never leave the network
    """
    core = getattr(request.app.state, "core", None)
    if core is None:
        return {
            "status": "unavailable",
            "initialized": False,
            "providers": [],
            "local_providers": [],
            "message": "Reasoning core not initialized",
        }

    registry = core.registry
    loaded = registry.providers
    response = {
        "status": "ok" if loaded else "unavailable",
        "initialized": registry.is_initialized,
        "providers": list(loaded),
        "local_providers": [name for name, provider in loaded.items() if provider.is_local],
    }

    if not registry.is_initialized:
        response["message"] = "Providers not loaded yet"
    elif not loaded:
        response["message"] = "No AI providers available. Enable a provider and check its credential."
    else:
        response["message"] = "Provider routing is ready"

    return response
