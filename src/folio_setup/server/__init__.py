"""Setup API server: the endpoints the setup wizard talks to."""

from .app import create_app
from .management_client import (
    ManagementAPIError,
    ManagementClient,
    ManagementNotFoundError,
    ManagementTimeoutError,
)

__all__ = [
    "ManagementAPIError",
    "ManagementClient",
    "ManagementNotFoundError",
    "ManagementTimeoutError",
    "create_app",
]
