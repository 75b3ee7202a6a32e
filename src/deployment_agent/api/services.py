"""Service deployment API: install, start, stop and status of managed services."""

from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from deployment_agent.core.exceptions import ArtifactTooLargeError, RequestInvalidError, ServiceNotFoundError
from deployment_agent.deploy.models import BackupArchive, DeploymentResult, ServiceStatusResponse
from deployment_agent.deploy.orchestrator import DeploymentOrchestrator


router = APIRouter()
logger = structlog.get_logger()

# How often a running request checks whether its client went away
DISCONNECT_POLL_SECONDS = 0.5


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("DeploymentOrchestrator not initialized")
    return orchestrator


@contextmanager
def cancellation(request: Request) -> Iterator[threading.Event]:
    """Register a cancellation event that an exit signal or client disconnect can set."""
    event = threading.Event()
    events = request.app.state.cancel_events
    events.add(event)
    try:
        yield event
    finally:
        events.discard(event)


async def run_cancellable(request: Request, func: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking orchestrator call in the threadpool.

    ``func`` receives a cancellation event as its last argument. The event is
    set when the client disconnects or the server receives an exit signal.
    """
    with cancellation(request) as event:
        task = asyncio.ensure_future(run_in_threadpool(func, *args, event))
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
                if done:
                    return task.result()
                if not event.is_set() and await request.is_disconnected():
                    logger.warning("Client disconnected, cancelling request", path=request.url.path)
                    event.set()
        except asyncio.CancelledError:
            event.set()
            raise


async def _first_upload(request: Request) -> Optional[UploadFile]:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        return None
    form = await request.form()
    for value in form.values():
        if isinstance(value, UploadFile):
            return value
    return None


def _upload_size(upload: UploadFile) -> int:
    stream = upload.file
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(0)
    return size


@router.post("", response_model=DeploymentResult)
async def install(
    request: Request,
    serviceName: Optional[str] = Query(None),
    localDirectory: Optional[str] = Query(None),
):
    """Replace a service's installation with the uploaded zip archive."""
    orchestrator = get_orchestrator(request)
    settings = request.app.state.settings

    upload = await _first_upload(request)
    artifact = None
    try:
        if upload is not None:
            size = _upload_size(upload)
            if size > settings.max_upload_size_mb * 1024 * 1024:
                raise ArtifactTooLargeError(
                    f"Artifact exceeds maximum allowed size of {settings.max_upload_size_mb} MB", code="too_large"
                )
            logger.info("Artifact received", filename=upload.filename, bytes=size)
            artifact = upload.file

        result = await run_cancellable(request, orchestrator.install, serviceName, localDirectory, artifact)
    finally:
        if upload is not None:
            await upload.close()

    if not result.started:
        return JSONResponse(
            status_code=400,
            content={
                "error": "ServiceStartFailed",
                "message": result.error,
                "result": result.model_dump(mode="json"),
            },
        )
    return result


@router.get("/status", response_model=ServiceStatusResponse)
async def get_status(request: Request, serviceName: Optional[str] = Query(None)):
    orchestrator = get_orchestrator(request)
    status = await run_in_threadpool(orchestrator.service_status, serviceName)
    return ServiceStatusResponse(serviceName=serviceName.strip(), status=status)


@router.put("/status", response_model=ServiceStatusResponse)
async def update_status(
    request: Request,
    serviceName: Optional[str] = Query(None),
    start: Optional[bool] = Query(None),
):
    """Start (``start=true``) or stop (``start=false``) a service."""
    orchestrator = get_orchestrator(request)
    if not serviceName or not serviceName.strip():
        raise RequestInvalidError("Missing required value for querystring 'serviceName'.")
    if start is None:
        raise RequestInvalidError("Missing required value for querystring 'start'.")

    operation = orchestrator.start_service if start else orchestrator.stop_service
    status = await run_cancellable(request, operation, serviceName)
    return ServiceStatusResponse(serviceName=serviceName.strip(), status=status)


@router.get("/start", response_model=ServiceStatusResponse)
async def start_service(request: Request, serviceName: Optional[str] = Query(None)):
    orchestrator = get_orchestrator(request)
    try:
        status = await run_cancellable(request, orchestrator.start_service, serviceName)
    except ServiceNotFoundError as exc:
        raise RequestInvalidError(str(exc)) from exc
    return ServiceStatusResponse(serviceName=serviceName.strip(), status=status)


@router.get("/stop", response_model=ServiceStatusResponse)
async def stop_service(request: Request, serviceName: Optional[str] = Query(None)):
    orchestrator = get_orchestrator(request)
    try:
        status = await run_cancellable(request, orchestrator.stop_service, serviceName)
    except ServiceNotFoundError as exc:
        raise RequestInvalidError(str(exc)) from exc
    return ServiceStatusResponse(serviceName=serviceName.strip(), status=status)


@router.get("/backups", response_model=List[BackupArchive])
async def list_backups(request: Request, localDirectory: Optional[str] = Query(None)):
    """Compressed backups kept for an install directory, newest first."""
    orchestrator = get_orchestrator(request)
    if not localDirectory or not localDirectory.strip():
        raise RequestInvalidError("Missing required value for querystring 'localDirectory'.")
    return await run_in_threadpool(orchestrator.backups.list_backups, Path(localDirectory.strip()))
