"""Client for the setup API consumed by the wizard."""

from .setup_client import SetupApiClient

__all__ = [
    "SetupApiClient",
]
