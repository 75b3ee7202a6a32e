"""API middleware for request logging, metrics, request capture and error handling."""

import time
import uuid
from pathlib import Path
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from deployment_agent.core.exceptions import DeploymentAgentError

logger = structlog.get_logger()

REQUEST_COUNT = Counter(
    "deployment_agent_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "deployment_agent_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)

UNMATCHED_ENDPOINT = "unmatched"


def error_body(error: str, message: str, code: Optional[str] = None) -> dict:
    return {"error": error, "message": message, "code": code}


def setup_error_handling(app: FastAPI) -> None:
    """Map every failure to the agent's ``{error, message, code}`` body."""

    @app.exception_handler(DeploymentAgentError)
    async def agent_error_handler(request: Request, exc: DeploymentAgentError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.__class__.__name__, str(exc), exc.code),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Malformed query values (e.g. ``start=maybe``) are invalid requests."""
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part not in ("query", "body"))
            problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return JSONResponse(
            status_code=400,
            content=error_body("RequestInvalidError", "; ".join(problems) or "Invalid request", "validation"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Unknown routes and wrong methods
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body("HTTPException", str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=error_body("InternalServerError", "An unexpected error occurred"),
        )


def _endpoint_label(request: Request, status_code: int) -> str:
    """Route template for metrics so query strings and unknown paths stay out of labels."""
    route = request.scope.get("route")
    if route is not None:
        return route.path
    if status_code == 404:
        return UNMATCHED_ENDPOINT
    return request.url.path


def setup_request_middleware(app: FastAPI) -> None:
    """Log each request with a request id and record HTTP metrics."""

    @app.middleware("http")
    async def observe_requests(request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        service_name = request.query_params.get("serviceName")
        if service_name:
            structlog.contextvars.bind_contextvars(serviceName=service_name)
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Request failed", duration_seconds=time.time() - start_time, exc_info=exc)
            raise
        finally:
            structlog.contextvars.clear_contextvars()

        duration = time.time() - start_time
        endpoint = _endpoint_label(request, response.status_code)
        REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)
        logger.info(
            "Request completed",
            request_id=request_id,
            endpoint=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
        )

        response.headers["X-Request-ID"] = request_id
        return response


def setup_request_capture(app: FastAPI, directory: Path) -> None:
    """Write every request and response body to ``directory``.

    Files are named ``<id>-request.txt`` and ``<id>-response.txt``.
    """
    directory.mkdir(parents=True, exist_ok=True)

    @app.middleware("http")
    async def capture_bodies(request: Request, call_next: Callable) -> Response:
        capture_id = uuid.uuid4().hex

        request_body = await request.body()
        await run_in_threadpool((directory / f"{capture_id}-request.txt").write_bytes, request_body)

        response = await call_next(request)

        response_body = b"".join([chunk async for chunk in response.body_iterator])
        await run_in_threadpool((directory / f"{capture_id}-response.txt").write_bytes, response_body)

        return Response(
            content=response_body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
        )
