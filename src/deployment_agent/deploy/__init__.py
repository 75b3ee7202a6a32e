"""Deployment primitives.

- DeploymentOrchestrator: stop, archive, extract, start, compress, prune
- BackupStore: snapshots and retention of previous installations
- RetryPolicy: bounded retry schedules with cancellation
"""

from .backups import BackupStore
from .models import (
    DeploymentResult,
    DeploymentState,
    DeploymentTarget,
    RetrySchedule,
    ServiceStatus,
)
from .orchestrator import DeploymentOrchestrator
from .retry import RetryPolicy

__all__ = [
    "BackupStore",
    "DeploymentOrchestrator",
    "DeploymentResult",
    "DeploymentState",
    "DeploymentTarget",
    "RetryPolicy",
    "RetrySchedule",
    "ServiceStatus",
]
