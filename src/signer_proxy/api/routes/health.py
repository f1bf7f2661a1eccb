"""Health check endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from signer_proxy import __version__
from signer_proxy.signing.factory import get_connector_info

router = APIRouter()


@router.get("/ping", response_class=PlainTextResponse)
async def ping() -> str:
    """Liveness probe."""
    return "pong"


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "signer-proxy"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with signer and configuration info."""
    settings = request.app.state.settings
    signer = await get_connector_info(request.app.state.connector)
    return {
        "status": "healthy" if signer["healthy"] else "degraded",
        "service": "signer-proxy",
        "version": __version__,
        "signer": signer,
        "cached_keys": request.app.state.registry.cached_keys,
        "config": settings.get_safe_dict(),
    }
