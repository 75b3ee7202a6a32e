"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from deployment_agent import __version__

router = APIRouter()

# Track start time
START_TIME = datetime.now(timezone.utc)


class RuntimeInfo(BaseModel):
    version: str
    start_time: datetime
    deployments_in_progress: int
    retention_count: int
    status: str


@router.get("/health", response_model=Dict[str, str])
async def health_check() -> Dict[str, str]:
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/info", response_model=RuntimeInfo)
async def runtime_info(request: Request) -> RuntimeInfo:
    """Get detailed agent information."""
    orchestrator = request.app.state.orchestrator
    return RuntimeInfo(
        version=__version__,
        start_time=START_TIME,
        deployments_in_progress=len(request.app.state.cancel_events),
        retention_count=orchestrator.retention_count,
        status="healthy",
    )
