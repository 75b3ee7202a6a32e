"""Main entry point for the Deployment Agent."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from deployment_agent import __version__
from deployment_agent.api.health import router as health_router
from deployment_agent.api.health import health_check as runtime_health_check
from deployment_agent.api.middleware import (
    setup_error_handling,
    setup_request_capture,
    setup_request_middleware,
)
from deployment_agent.api.services import router as services_router
from deployment_agent.core.config import Settings
from deployment_agent.deploy.orchestrator import DeploymentOrchestrator
from deployment_agent.services.controller import ServiceController, SystemdServiceController
from deployment_agent.utils.logging import setup_logging

logger = structlog.get_logger()


def cancel_in_flight(app: FastAPI) -> int:
    """Set the cancellation event of every running request; returns how many."""
    events = list(app.state.cancel_events)
    for event in events:
        event.set()
    return len(events)


class AgentServer(uvicorn.Server):
    """uvicorn server that aborts in-flight deployments when an exit signal arrives."""

    def __init__(self, config: uvicorn.Config, app: FastAPI):
        super().__init__(config)
        self.app = app

    def handle_exit(self, sig, frame) -> None:
        cancelled = cancel_in_flight(self.app)
        logger.info("Exit signal received", signal=sig, cancelled_requests=cancelled)
        super().handle_exit(sig, frame)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = app.state.settings
    logger.info(
        "Starting Deployment Agent",
        version=__version__,
        retention_count=settings.retention_count,
        stop_delays=settings.stop_delays,
        start_delays=settings.start_delays,
        move_delays=settings.move_delays,
    )

    yield

    logger.info("Shutting down Deployment Agent", cancelled_requests=cancel_in_flight(app))


def create_app(settings: Optional[Settings] = None, controller: Optional[ServiceController] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    if controller is None:
        controller = SystemdServiceController(
            systemctl=settings.systemctl_path,
            control_timeout=settings.control_timeout_seconds,
            default_stop_timeout=settings.stop_timeout_seconds,
        )

    app = FastAPI(
        title="Deployment Agent",
        version=__version__,
        description="Host-resident agent that installs uploaded builds of managed services",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.orchestrator = DeploymentOrchestrator.from_settings(settings, controller)
    app.state.cancel_events = set()

    # Setup middleware
    setup_error_handling(app)
    if settings.log_requests_enabled:
        setup_request_capture(app, Path(settings.request_log_dir))
    setup_request_middleware(app)

    # Mount routers
    app.include_router(health_router, prefix="/runtime", tags=["runtime"])
    app.include_router(services_router, prefix="/windowsservice", tags=["services"])
    # Mixed-case alias used by older clients
    app.include_router(services_router, prefix="/windowsService", tags=["services"], include_in_schema=False)

    @app.get("/health")
    async def top_level_health():
        return await runtime_health_check()

    if settings.metrics_enabled:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    return app


def run():
    """Run the application."""
    settings = Settings()
    app = create_app(settings)

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = AgentServer(config, app)
    server.run()


if __name__ == "__main__":
    run()
