"""
Pytest configuration and fixtures for deployment agent tests.
"""

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from deployment_agent.core.exceptions import ServiceControlError
from deployment_agent.deploy.models import RetrySchedule
from deployment_agent.deploy.orchestrator import DeploymentOrchestrator
from deployment_agent.deploy.retry import RetryPolicy
from deployment_agent.services.models import ServiceStatus
from helpers import build_zip


class FakeController:
    """In-memory service controller.

    ``stop_errors`` / ``start_errors`` are consumed one per call; once empty
    the call succeeds. Set ``always_fail_*`` to fail every call.
    """

    def __init__(self, services: Optional[Dict[str, ServiceStatus]] = None):
        self.services = services if services is not None else {"app": ServiceStatus.RUNNING}
        self.calls: List[tuple] = []
        self.stop_errors: List[Exception] = []
        self.start_errors: List[Exception] = []
        self.always_fail_stop: Optional[Exception] = None
        self.always_fail_start: Optional[Exception] = None

    def exists(self, name: str) -> bool:
        self.calls.append(("exists", name))
        return name in self.services

    def status(self, name: str) -> ServiceStatus:
        self.calls.append(("status", name))
        if name not in self.services:
            raise ServiceControlError(f"Service '{name}' not found", service_name=name, kind="not_found")
        return self.services[name]

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        if self.always_fail_start is not None:
            raise self.always_fail_start
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.services[name] = ServiceStatus.RUNNING

    def stop(self, name: str, timeout: Optional[float] = None) -> None:
        self.calls.append(("stop", name))
        if self.always_fail_stop is not None:
            raise self.always_fail_stop
        if self.stop_errors:
            raise self.stop_errors.pop(0)
        self.services[name] = ServiceStatus.STOPPED

    def calls_named(self, op: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == op]


class RecordingWait:
    """Wait function for RetryPolicy that records delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, event, delay: float) -> bool:
        self.delays.append(delay)
        return event.is_set()


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def recording_wait() -> RecordingWait:
    return RecordingWait()


@pytest.fixture
def retry(recording_wait) -> RetryPolicy:
    return RetryPolicy(wait=recording_wait)


@pytest.fixture
def schedules():
    return {
        "stop_schedule": RetrySchedule("service-stop", (5, 10, 15)),
        "start_schedule": RetrySchedule("service-start", (5, 10, 15)),
        "move_schedule": RetrySchedule("filesystem-move", (5, 10, 15, 20)),
    }


@pytest.fixture
def orchestrator(controller, retry, schedules) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(controller, retry=retry, retention_count=5, **schedules)


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """A service install directory holding the currently deployed version."""
    directory = tmp_path / "services" / "app"
    (directory / "bin").mkdir(parents=True)
    (directory / "app.exe").write_bytes(b"v1 binary")
    (directory / "bin" / "lib.dll").write_bytes(b"v1 library")
    (directory / "app.config").write_text("version=1")
    return directory


@pytest.fixture
def artifact_bytes() -> bytes:
    return build_zip({
        "app.exe": b"v2 binary",
        "bin/lib.dll": b"v2 library",
        "app.config": b"version=2",
        "new.txt": b"added in v2",
    })
