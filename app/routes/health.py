"""
Health Check Routes
Endpoints for monitoring application health
"""
from fastapi import APIRouter, Depends

from app.config import settings
from app.models.api import HealthResponse
from app.services.db import health_check as db_health_check
from app.services.pipeline import PacketPipeline, get_pipeline

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for monitoring.
    Returns status and version information including database health.

    NOTE: This endpoint is intentionally unauthenticated to allow monitoring tools
    (e.g., load balancers, health check services) to verify service availability.
    No sensitive data is returned.
    """
    db_health = db_health_check()

    overall_status = "ok"
    if db_health.get("status") != "healthy":
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        details={
            "database": db_health,
            "pdf_storage_backend": settings.pdf_storage_backend,
            "email_enabled": settings.email_enabled,
        }
    )


@router.get("/health/worker")
async def worker_health(pipeline: PacketPipeline = Depends(get_pipeline)):
    """
    Health check endpoint for the packet worker.
    Returns worker status, last tick statistics and retry queue counts.

    NOTE: Unauthenticated for monitoring tools; returns only aggregate counts.
    """
    worker = pipeline.worker
    worker_status = worker.get_status()
    return {
        "status": "healthy" if worker.is_running else "stopped",
        "worker": worker_status,
        "retry_stats": worker.get_retry_stats().model_dump(),
    }
