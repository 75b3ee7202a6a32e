"""API module for the Deployment Agent."""

from .health import router as health_router
from .services import router as services_router

__all__ = [
    "health_router",
    "services_router",
]
