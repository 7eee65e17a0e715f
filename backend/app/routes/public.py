# /app/routes/public.py

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from datetime import datetime

from app.config.settings import settings
from app.services.simulation_service import simulation_service

# This file defines public-facing endpoints such as health checks, the root
# endpoint and the Prometheus metrics exposition.

router = APIRouter()

@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "WhatsApp Flow Simulator",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }

@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.utcnow(), "active_runs": len(simulation_service)}

@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}

@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
