"""Custom exceptions for the Deployment Agent."""

from typing import Optional


class DeploymentAgentError(Exception):
    """Base exception for all agent errors."""

    status_code: int = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RequestInvalidError(DeploymentAgentError):
    """Request is missing data or references an unknown target."""

    status_code = 400


class ServiceNotFoundError(RequestInvalidError):
    """Named service is not registered with the OS."""

    status_code = 404


class FatalBeforeMutationError(DeploymentAgentError):
    """Stop or archive step failed; the install directory was not replaced."""

    status_code = 500


class ArtifactInvalidError(DeploymentAgentError):
    """Uploaded artifact could not be extracted."""

    status_code = 400


class ArtifactTooLargeError(DeploymentAgentError):
    """Uploaded artifact exceeds the configured size limit."""

    status_code = 413


class DeploymentCancelledError(DeploymentAgentError):
    """Deployment was cancelled while waiting between retries."""

    status_code = 503


class ServiceControlError(DeploymentAgentError):
    """Lifecycle controller failure.

    ``kind`` and ``retryable`` are decided where the failure is raised so the
    retry layer never has to inspect error identity afterwards.
    """

    def __init__(
        self,
        message: str,
        *,
        service_name: Optional[str] = None,
        kind: str = "failed",
        retryable: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code or kind)
        self.service_name = service_name
        self.kind = kind
        self.retryable = retryable


class ServiceTimeoutError(ServiceControlError):
    """Service did not respond to a start or control request in time."""

    def __init__(self, message: str, *, service_name: Optional[str] = None):
        super().__init__(message, service_name=service_name, kind="timeout", retryable=True)
