"""Models for a single deployment attempt."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from deployment_agent.services.models import ServiceStatus


class DeploymentState(str, Enum):
    VALIDATING = "validating"
    STOPPING = "stopping"
    ARCHIVING = "archiving"
    EXTRACTING = "extracting"
    STARTING = "starting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    REJECTED = "rejected"     # Validation failed, nothing touched
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentTarget:
    """OS-managed service and the directory it runs from."""

    service_name: str
    install_directory: Path

    @property
    def key(self) -> Tuple[str, str]:
        return (self.service_name.casefold(), os.path.normcase(str(self.install_directory.resolve())))


@dataclass(frozen=True)
class RetrySchedule:
    """Ordered waits applied between attempts of one operation class."""

    name: str
    delays: Tuple[float, ...]

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1


@dataclass
class BackupSnapshot:
    """Pre-deployment install directory moved under the backups root."""

    name: str
    path: Path
    base_name: str
    created_at: datetime

    @property
    def backups_root(self) -> Path:
        return self.path.parent


@dataclass
class DeploymentAttempt:
    """Transient state of one install request."""

    target: DeploymentTarget
    state: DeploymentState = DeploymentState.VALIDATING
    history: List[DeploymentState] = field(default_factory=lambda: [DeploymentState.VALIDATING])
    snapshot: Optional[BackupSnapshot] = None
    archive_path: Optional[Path] = None
    pruned: List[Path] = field(default_factory=list)
    start_error: Optional[str] = None
    finalization_errors: List[str] = field(default_factory=list)
    status: ServiceStatus = ServiceStatus.UNKNOWN

    def transition(self, state: DeploymentState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def started(self) -> bool:
        return self.start_error is None


class BackupArchive(BaseModel):
    name: str
    path: str
    size: int
    createdAt: datetime


class DeploymentResult(BaseModel):
    serviceName: str
    localDirectory: str
    status: ServiceStatus
    started: bool = True
    error: Optional[str] = None
    backupArchive: Optional[str] = None
    prunedArchives: List[str] = Field(default_factory=list)
    finalizationErrors: List[str] = Field(default_factory=list)
    states: List[DeploymentState] = Field(default_factory=list)

    @classmethod
    def from_attempt(cls, attempt: DeploymentAttempt) -> "DeploymentResult":
        return cls(
            serviceName=attempt.target.service_name,
            localDirectory=str(attempt.target.install_directory),
            status=attempt.status,
            started=attempt.started,
            error=attempt.start_error,
            backupArchive=str(attempt.archive_path) if attempt.archive_path else None,
            prunedArchives=[str(p) for p in attempt.pruned],
            finalizationErrors=list(attempt.finalization_errors),
            states=list(attempt.history),
        )


class ServiceStatusResponse(BaseModel):
    serviceName: str
    status: ServiceStatus
