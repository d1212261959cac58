"""Provisioning and migration orchestrator for a self-hosted Folio install.

Client side: ``SetupOrchestrator`` drives the setup wizard against the setup
API. Server side: ``folio_setup.server.create_app`` builds that API.
"""

from .api.setup_client import SetupApiClient
from .config_store import LocalConfigStore, StoredConfig
from .errors import SetupError
from .settings import SetupSettings
from .wizard.orchestrator import SetupOrchestrator

__version__ = "0.1.0"

__all__ = [
    "LocalConfigStore",
    "SetupApiClient",
    "SetupError",
    "SetupOrchestrator",
    "SetupSettings",
    "StoredConfig",
    "__version__",
]
