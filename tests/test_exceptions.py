import pytest

from deployment_agent.core.exceptions import (
    ArtifactInvalidError,
    ArtifactTooLargeError,
    DeploymentAgentError,
    DeploymentCancelledError,
    FatalBeforeMutationError,
    RequestInvalidError,
    ServiceControlError,
    ServiceNotFoundError,
    ServiceTimeoutError,
)


@pytest.mark.parametrize("error_class,status_code", [
    (DeploymentAgentError, 500),
    (RequestInvalidError, 400),
    (ServiceNotFoundError, 404),
    (FatalBeforeMutationError, 500),
    (ArtifactInvalidError, 400),
    (ArtifactTooLargeError, 413),
    (DeploymentCancelledError, 503),
])
def test_status_codes(error_class, status_code):
    assert error_class.status_code == status_code
    assert error_class("boom").status_code == status_code


def test_fatal_before_mutation_declares_its_status():
    assert "status_code" in vars(FatalBeforeMutationError)


def test_timeout_is_retryable_control_error():
    exc = ServiceTimeoutError("slow", service_name="web")
    assert isinstance(exc, ServiceControlError)
    assert exc.kind == "timeout"
    assert exc.retryable
    assert exc.code == "timeout"
    assert exc.service_name == "web"


def test_control_error_code_defaults_to_kind():
    exc = ServiceControlError("missing", kind="unavailable")
    assert exc.code == "unavailable"
    assert not exc.retryable
