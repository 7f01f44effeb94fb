"""Health check endpoints."""

from fastapi import APIRouter

from txengine.config import get_settings
from txengine.signing.factory import get_signer_provider

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "txengine"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration and signer info."""
    settings = get_settings()
    signer = await get_signer_provider().get_info()
    return {
        "status": "healthy" if signer.get("healthy") else "degraded",
        "service": "txengine",
        "version": "0.1.0",
        "signer": signer,
        "config": settings.get_safe_dict(),
    }
