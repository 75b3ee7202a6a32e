"""Service lifecycle control for OS-managed background processes."""

from __future__ import annotations

import subprocess
import time
from typing import List, Optional, Protocol

import structlog

from deployment_agent.core.exceptions import ServiceControlError, ServiceTimeoutError
from deployment_agent.services.models import ServiceStatus

logger = structlog.get_logger()

# systemd ActiveState -> ServiceStatus
_ACTIVE_STATES = {
    "active": ServiceStatus.RUNNING,
    "reloading": ServiceStatus.RUNNING,
    "inactive": ServiceStatus.STOPPED,
    "failed": ServiceStatus.STOPPED,
    "activating": ServiceStatus.START_PENDING,
    "deactivating": ServiceStatus.STOP_PENDING,
}

_TIMEOUT_MARKERS = ("timeout was exceeded", "timed out")


class ServiceController(Protocol):
    """Capabilities the orchestrator needs from the OS service manager."""

    def exists(self, name: str) -> bool: ...

    def status(self, name: str) -> ServiceStatus: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str, timeout: Optional[float] = None) -> None: ...


def unit_name(name: str) -> str:
    return name if "." in name else f"{name}.service"


class SystemdServiceController:
    """Drives systemd units through ``systemctl``."""

    def __init__(
        self,
        systemctl: str = "systemctl",
        control_timeout: float = 30.0,
        default_stop_timeout: float = 10.0,
        poll_interval: float = 0.5,
    ):
        self.systemctl = systemctl
        self.control_timeout = control_timeout
        self.default_stop_timeout = default_stop_timeout
        self.poll_interval = poll_interval

    def _run(self, name: str, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.systemctl, *args]
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.control_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ServiceTimeoutError(
                f"Service '{name}' did not respond to the start or control request in a timely fashion",
                service_name=name,
            ) from exc
        except FileNotFoundError as exc:
            raise ServiceControlError(
                f"systemctl not available: {exc}", service_name=name, kind="unavailable"
            ) from exc

    def _show(self, name: str, prop: str) -> str:
        result = self._run(name, ["show", unit_name(name), f"--property={prop}", "--value"])
        if result.returncode != 0:
            raise ServiceControlError(
                f"Failed to query service '{name}': {result.stderr.strip()}",
                service_name=name,
            )
        return result.stdout.strip()

    def exists(self, name: str) -> bool:
        try:
            load_state = self._show(name, "LoadState")
        except ServiceControlError:
            return False
        return bool(load_state) and load_state != "not-found"

    def status(self, name: str) -> ServiceStatus:
        active_state = self._show(name, "ActiveState")
        return _ACTIVE_STATES.get(active_state, ServiceStatus.UNKNOWN)

    def start(self, name: str) -> None:
        logger.info("Starting service", service=name)
        result = self._run(name, ["start", unit_name(name)])
        if result.returncode == 0:
            return
        message = result.stderr.strip() or result.stdout.strip()
        if any(marker in message.lower() for marker in _TIMEOUT_MARKERS):
            raise ServiceTimeoutError(
                f"Service '{name}' did not respond to the start or control request in a timely fashion: {message}",
                service_name=name,
            )
        raise ServiceControlError(
            f"Failed to start service '{name}': {message}",
            service_name=name,
            kind="failed",
        )

    def stop(self, name: str, timeout: Optional[float] = None) -> None:
        """Request a stop and wait up to ``timeout`` seconds for the unit to go inactive."""
        timeout = self.default_stop_timeout if timeout is None else timeout
        logger.info("Stopping service", service=name, timeout_seconds=timeout)
        result = self._run(name, ["stop", "--no-block", unit_name(name)])
        if result.returncode != 0:
            raise ServiceControlError(
                f"Failed to stop service '{name}': {result.stderr.strip()}",
                service_name=name,
                kind="failed",
                retryable=True,
            )

        deadline = time.monotonic() + timeout
        while True:
            if self.status(name) == ServiceStatus.STOPPED:
                return
            if time.monotonic() >= deadline:
                raise ServiceTimeoutError(
                    f"Service '{name}' did not stop within {timeout} seconds",
                    service_name=name,
                )
            time.sleep(self.poll_interval)
