"""Setup wizard: validators, state machine, recovery and orchestrator."""

from .orchestrator import SetupOrchestrator
from .recovery import (
    ProvisioningOutcome,
    ProvisioningRunTracker,
    classify,
    resolve_provisioning,
)
from .state_machine import (
    MAX_LOG_ENTRIES,
    TRANSITIONS,
    WizardState,
    allowed_actions,
    append_log,
    initial_state,
    reduce,
)
from .validators import (
    extract_project_identifier,
    normalize_url,
    validate_key_shape,
    validate_token,
    validate_url_shape,
)

__all__ = [
    'MAX_LOG_ENTRIES',
    'ProvisioningOutcome',
    'ProvisioningRunTracker',
    'SetupOrchestrator',
    'TRANSITIONS',
    'WizardState',
    'allowed_actions',
    'append_log',
    'classify',
    'extract_project_identifier',
    'initial_state',
    'normalize_url',
    'reduce',
    'resolve_provisioning',
    'validate_key_shape',
    'validate_token',
    'validate_url_shape',
]
