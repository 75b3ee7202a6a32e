"""OS service lifecycle control."""

from .controller import ServiceController, SystemdServiceController
from .models import ServiceStatus

__all__ = ["ServiceController", "ServiceStatus", "SystemdServiceController"]
