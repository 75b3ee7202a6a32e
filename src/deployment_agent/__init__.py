"""Deployment Agent - host-resident installer for managed services."""

__version__ = "0.1.0"

from deployment_agent.core.config import Settings

__all__ = ["Settings", "__version__"]
