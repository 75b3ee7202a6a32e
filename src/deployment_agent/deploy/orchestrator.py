"""Deployment orchestrator: stop, archive, extract, start, compress, prune."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import BinaryIO, Optional

import structlog
from prometheus_client import Counter

from deployment_agent.core.config import DEFAULT_RETENTION_COUNT, Settings
from deployment_agent.core.exceptions import (
    ArtifactInvalidError,
    DeploymentCancelledError,
    FatalBeforeMutationError,
    RequestInvalidError,
    ServiceNotFoundError,
)
from deployment_agent.deploy.archive import is_zip_stream, safe_extract
from deployment_agent.deploy.backups import BackupStore
from deployment_agent.deploy.locks import KeyedLocks
from deployment_agent.deploy.models import (
    DeploymentAttempt,
    DeploymentResult,
    DeploymentState,
    DeploymentTarget,
    RetrySchedule,
    ServiceStatus,
)
from deployment_agent.deploy.retry import RetryPolicy, retry_on_start, retry_on_stop
from deployment_agent.services.controller import ServiceController
from deployment_agent.utils.logging import deployment_context

logger = structlog.get_logger()

DEPLOYMENT_COUNT = Counter(
    "deployment_agent_deployments_total",
    "Install requests by outcome",
    ["outcome"],
)


class DeploymentOrchestrator:
    """Replaces a service's installation with an uploaded artifact.

    One install runs to completion per target at a time. Once the old
    installation has been archived, the snapshot is always compressed and
    old archives pruned, whatever happens afterwards.
    """

    def __init__(
        self,
        controller: ServiceController,
        *,
        stop_schedule: RetrySchedule,
        start_schedule: RetrySchedule,
        move_schedule: RetrySchedule,
        retention_count: int = DEFAULT_RETENTION_COUNT,
        stop_timeout: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        backups: Optional[BackupStore] = None,
    ):
        self.controller = controller
        self.stop_schedule = stop_schedule
        self.start_schedule = start_schedule
        self.move_schedule = move_schedule
        self.retention_count = retention_count
        self.stop_timeout = stop_timeout
        self.retry = retry or RetryPolicy()
        self.backups = backups or BackupStore(self.retry, move_schedule)
        self.target_locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, controller: ServiceController) -> "DeploymentOrchestrator":
        return cls(
            controller,
            stop_schedule=RetrySchedule("service-stop", settings.stop_delays),
            start_schedule=RetrySchedule("service-start", settings.start_delays),
            move_schedule=RetrySchedule("filesystem-move", settings.move_delays),
            retention_count=settings.retention_count,
            stop_timeout=settings.stop_timeout_seconds,
        )

    # Validation

    def require_service(self, service_name: Optional[str]) -> str:
        if not service_name or not service_name.strip():
            raise RequestInvalidError("Missing required value for querystring 'serviceName'.")
        service_name = service_name.strip()
        if not self.controller.exists(service_name):
            raise ServiceNotFoundError(f"Service '{service_name}' does not exist.")
        return service_name

    def validate(
        self,
        service_name: Optional[str],
        local_directory: Optional[str],
        artifact: Optional[BinaryIO],
    ) -> DeploymentTarget:
        """Check an install request without touching the service or the filesystem."""
        if not service_name or not service_name.strip():
            raise RequestInvalidError("Missing required value for querystring 'serviceName'.")
        if not local_directory or not local_directory.strip():
            raise RequestInvalidError("Missing required value for querystring 'localDirectory'.")
        service_name = service_name.strip()
        if not self.controller.exists(service_name):
            raise RequestInvalidError(f"Service '{service_name}' does not exist.")
        directory = Path(local_directory.strip())
        if not directory.is_dir():
            raise RequestInvalidError(f"Directory '{local_directory}' does not exist.")
        if artifact is None:
            raise RequestInvalidError("Missing required file in request.")
        if not is_zip_stream(artifact):
            raise RequestInvalidError("Uploaded file is not a zip archive.")
        return DeploymentTarget(service_name=service_name, install_directory=directory)

    # Install

    def install(
        self,
        service_name: Optional[str],
        local_directory: Optional[str],
        artifact: Optional[BinaryIO],
        cancel_event: Optional[threading.Event] = None,
    ) -> DeploymentResult:
        try:
            target = self.validate(service_name, local_directory, artifact)
        except RequestInvalidError as exc:
            DEPLOYMENT_COUNT.labels(outcome="rejected").inc()
            logger.warning(
                "Install request rejected",
                service=service_name,
                directory=local_directory,
                state=DeploymentState.REJECTED.value,
                error=str(exc),
            )
            raise

        with deployment_context(target.service_name, str(target.install_directory)):
            with self.target_locks.hold(target.key):
                attempt = DeploymentAttempt(target=target)
                try:
                    self._run(attempt, artifact, cancel_event)
                except DeploymentCancelledError:
                    attempt.transition(DeploymentState.FAILED)
                    DEPLOYMENT_COUNT.labels(outcome="cancelled").inc()
                    logger.warning("Deployment cancelled", states=[s.value for s in attempt.history])
                    raise
                except Exception:
                    attempt.transition(DeploymentState.FAILED)
                    DEPLOYMENT_COUNT.labels(outcome="failed").inc()
                    logger.exception("Deployment failed", states=[s.value for s in attempt.history])
                    raise

            outcome = "completed" if attempt.started else "start_failed"
            DEPLOYMENT_COUNT.labels(outcome=outcome).inc()
            logger.info(
                "Deployment finished",
                started=attempt.started,
                status=attempt.status.value,
                archive=str(attempt.archive_path) if attempt.archive_path else None,
                pruned=len(attempt.pruned),
            )
            return DeploymentResult.from_attempt(attempt)

    def _run(self, attempt: DeploymentAttempt, artifact: BinaryIO, cancel_event: Optional[threading.Event]) -> None:
        target = attempt.target
        name = target.service_name
        directory = target.install_directory

        attempt.transition(DeploymentState.STOPPING)
        logger.info("Stopping service for deployment")
        try:
            self.retry.execute(
                lambda: self.controller.stop(name, self.stop_timeout),
                retry_on_stop,
                self.stop_schedule,
                cancel_event,
            )
        except DeploymentCancelledError:
            raise
        except Exception as exc:
            raise FatalBeforeMutationError(f"Failed to stop service '{name}': {exc}", code="stop_failed") from exc

        attempt.transition(DeploymentState.ARCHIVING)
        try:
            attempt.snapshot = self.backups.snapshot(directory, cancel_event)
        except DeploymentCancelledError:
            raise
        except OSError as exc:
            raise FatalBeforeMutationError(
                f"Failed to archive directory '{directory}': {exc}", code="archive_failed"
            ) from exc

        try:
            attempt.transition(DeploymentState.EXTRACTING)
            try:
                count = safe_extract(artifact, directory)
            except OSError as exc:
                raise ArtifactInvalidError(f"Failed to extract artifact: {exc}", code="extract_failed") from exc
            logger.info("Artifact extracted", files=count)

            attempt.transition(DeploymentState.STARTING)
            try:
                self.retry.execute(
                    lambda: self.controller.start(name),
                    retry_on_start,
                    self.start_schedule,
                    cancel_event,
                )
            except DeploymentCancelledError:
                raise
            except Exception as exc:
                attempt.start_error = f"Service deployed but service '{name}' failed to start: {exc}"
                logger.error("Service failed to start after deployment", error=str(exc))
        finally:
            attempt.transition(DeploymentState.FINALIZING)
            self._finalize(attempt)

        attempt.status = self._read_status(name)
        attempt.transition(DeploymentState.COMPLETED)

    def _finalize(self, attempt: DeploymentAttempt) -> None:
        """Compress the snapshot and prune old archives; never raises."""
        snapshot = attempt.snapshot
        if snapshot is None:
            return
        try:
            attempt.archive_path = self.backups.compress(snapshot)
        except Exception as exc:
            attempt.finalization_errors.append(f"Failed to compress backup '{snapshot.name}': {exc}")
            logger.exception("Backup compression failed", snapshot=str(snapshot.path))
        try:
            attempt.pruned = self.backups.prune(
                snapshot.backups_root,
                self.retention_count,
                base_name=snapshot.base_name,
            )
        except Exception as exc:
            attempt.finalization_errors.append(f"Failed to prune backups: {exc}")
            logger.exception("Backup pruning failed", backups_root=str(snapshot.backups_root))

    def _read_status(self, name: str) -> ServiceStatus:
        try:
            return self.controller.status(name)
        except Exception as exc:
            logger.warning("Could not read service status", error=str(exc))
            return ServiceStatus.UNKNOWN

    # Single lifecycle operations

    def service_status(self, service_name: Optional[str]) -> ServiceStatus:
        name = self.require_service(service_name)
        return self.controller.status(name)

    def start_service(self, service_name: Optional[str], cancel_event: Optional[threading.Event] = None) -> ServiceStatus:
        name = self.require_service(service_name)
        self.retry.execute(lambda: self.controller.start(name), retry_on_start, self.start_schedule, cancel_event)
        return self.controller.status(name)

    def stop_service(self, service_name: Optional[str], cancel_event: Optional[threading.Event] = None) -> ServiceStatus:
        name = self.require_service(service_name)
        self.retry.execute(
            lambda: self.controller.stop(name, self.stop_timeout),
            retry_on_stop,
            self.stop_schedule,
            cancel_event,
        )
        return self.controller.status(name)
