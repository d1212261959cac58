"""Setup wizard state machine.

Implements the two wizard branches:

  managed: welcome -> mode-select -> token-entry -> org-select
           -> provisioning -> migration
  manual:  welcome -> mode-select -> manual-credentials -> validating
           -> migration (or done)

``reduce(state, action)`` is pure. Allowed actions are listed in a transition
table keyed by ``(step, action kind)``; anything else raises
``InvalidWizardTransition`` so illegal transitions are observable. Actions
produced by a streamed operation carry the ``generation`` they belong to; an
action from an older generation is stale and leaves the state unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, ClassVar, Mapping

from ..errors import InvalidWizardTransition
from ..models import (
    LogEntry,
    LogKind,
    MigrationStatusSnapshot,
    OperationResult,
    Organization,
    WorkflowStep,
)

MAX_LOG_ENTRIES = 500

DEFAULT_PROJECT_NAME = 'Folio-Core'
DEFAULT_REGION = 'us-east-1'


# ── State ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ManagedState:
    """Managed-path input. The access token is deliberately absent."""

    organizations: tuple[Organization, ...] = ()
    selected_org: str = ''
    project_name: str = DEFAULT_PROJECT_NAME
    region: str = DEFAULT_REGION
    fetching_orgs: bool = False


@dataclass(frozen=True, slots=True)
class ManualState:
    url: str = ''
    key: str = ''


@dataclass(frozen=True, slots=True)
class WizardState:
    """Immutable snapshot of the whole wizard."""

    step: WorkflowStep = WorkflowStep.WELCOME
    managed: ManagedState = field(default_factory=ManagedState)
    manual: ManualState = field(default_factory=ManualState)
    project_identifier: str = ''
    logs: tuple[LogEntry, ...] = ()
    error: str | None = None
    migrating: bool = False
    migration_status: MigrationStatusSnapshot | None = None
    provisioning_result: OperationResult | None = None
    operation_generation: int = 0
    completed: bool = False

    @property
    def can_skip_migration(self) -> bool:
        return (
            self.step is WorkflowStep.MIGRATION
            and not self.migrating
            and self.migration_status is not None
            and not self.migration_status.needs_migration
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable view. Holds no access token and no database password."""
        status = self.migration_status
        result = self.provisioning_result
        return {
            'step': self.step.value,
            'managed': {
                'organizations': [
                    {'id': org.id, 'name': org.name} for org in self.managed.organizations
                ],
                'selectedOrg': self.managed.selected_org,
                'projectName': self.managed.project_name,
                'region': self.managed.region,
                'fetchingOrgs': self.managed.fetching_orgs,
            },
            'manual': {'url': self.manual.url, 'key': self.manual.key},
            'projectIdentifier': self.project_identifier,
            'logs': [
                {
                    'kind': entry.kind.value,
                    'message': entry.message,
                    'timestamp': entry.timestamp.isoformat(),
                }
                for entry in self.logs
            ],
            'error': self.error,
            'migrating': self.migrating,
            'migrationStatus': None if status is None else {
                'needsMigration': status.needs_migration,
                'targetVersion': status.target_version,
                'observedVersion': status.observed_version,
                'message': status.message,
            },
            'endpointUrl': None if result is None else result.endpoint_url,
            'operationGeneration': self.operation_generation,
            'completed': self.completed,
        }


def append_log(
    logs: tuple[LogEntry, ...],
    entry: LogEntry,
    *,
    capacity: int = MAX_LOG_ENTRIES,
) -> tuple[LogEntry, ...]:
    """Append with oldest-first eviction; never exceeds ``capacity``."""
    if capacity <= 0:
        return ()
    if len(logs) < capacity:
        return (*logs, entry)
    return (*logs[len(logs) - capacity + 1:], entry)


# ── Actions ─────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Action:
    kind: ClassVar[str] = ''


@dataclass(frozen=True, slots=True)
class Begin(Action):
    kind: ClassVar[str] = 'begin'


@dataclass(frozen=True, slots=True)
class ChooseManaged(Action):
    kind: ClassVar[str] = 'choose_managed'


@dataclass(frozen=True, slots=True)
class ChooseManual(Action):
    kind: ClassVar[str] = 'choose_manual'


@dataclass(frozen=True, slots=True)
class Back(Action):
    kind: ClassVar[str] = 'back'


@dataclass(frozen=True, slots=True)
class FetchOrgsStarted(Action):
    kind: ClassVar[str] = 'fetch_orgs_started'


@dataclass(frozen=True, slots=True)
class FetchOrgsFailed(Action):
    kind: ClassVar[str] = 'fetch_orgs_failed'
    message: str = ''


@dataclass(frozen=True, slots=True)
class OrganizationsLoaded(Action):
    kind: ClassVar[str] = 'organizations_loaded'
    organizations: tuple[Organization, ...] = ()


@dataclass(frozen=True, slots=True)
class SelectOrg(Action):
    kind: ClassVar[str] = 'select_org'
    org_id: str = ''


@dataclass(frozen=True, slots=True)
class SetProjectName(Action):
    kind: ClassVar[str] = 'set_project_name'
    name: str = ''


@dataclass(frozen=True, slots=True)
class SetRegion(Action):
    kind: ClassVar[str] = 'set_region'
    region: str = ''


@dataclass(frozen=True, slots=True)
class SetManualUrl(Action):
    kind: ClassVar[str] = 'set_manual_url'
    url: str = ''


@dataclass(frozen=True, slots=True)
class SetManualKey(Action):
    kind: ClassVar[str] = 'set_manual_key'
    key: str = ''


@dataclass(frozen=True, slots=True)
class ProvisioningStarted(Action):
    kind: ClassVar[str] = 'provisioning_started'


@dataclass(frozen=True, slots=True)
class IdentifierReceived(Action):
    kind: ClassVar[str] = 'identifier_received'
    identifier: str = ''
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class ProvisioningSucceeded(Action):
    kind: ClassVar[str] = 'provisioning_succeeded'
    result: OperationResult | None = None
    migration_status: MigrationStatusSnapshot | None = None
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class ProvisioningFailed(Action):
    kind: ClassVar[str] = 'provisioning_failed'
    message: str = ''
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class ValidationStarted(Action):
    kind: ClassVar[str] = 'validation_started'


@dataclass(frozen=True, slots=True)
class ValidationFailed(Action):
    kind: ClassVar[str] = 'validation_failed'
    message: str = ''
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class ValidationSucceeded(Action):
    kind: ClassVar[str] = 'validation_succeeded'
    url: str = ''
    project_identifier: str = ''
    migration_status: MigrationStatusSnapshot | None = None
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class MigrationStarted(Action):
    kind: ClassVar[str] = 'migration_started'
    project_identifier: str = ''


@dataclass(frozen=True, slots=True)
class MigrationFinished(Action):
    kind: ClassVar[str] = 'migration_finished'
    success: bool = False
    message: str | None = None
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class SkipMigration(Action):
    kind: ClassVar[str] = 'skip_migration'


@dataclass(frozen=True, slots=True)
class Complete(Action):
    kind: ClassVar[str] = 'complete'


@dataclass(frozen=True, slots=True)
class AddLog(Action):
    kind: ClassVar[str] = 'add_log'
    log_kind: LogKind = LogKind.INFO
    message: str = ''
    timestamp: datetime | None = None
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class ClearLogs(Action):
    kind: ClassVar[str] = 'clear_logs'


@dataclass(frozen=True, slots=True)
class SetError(Action):
    kind: ClassVar[str] = 'set_error'
    message: str | None = None
    generation: int | None = None


@dataclass(frozen=True, slots=True)
class OperationCancelled(Action):
    kind: ClassVar[str] = 'operation_cancelled'


# ── Transition table ────────────────────────────────────────────────

# Sentinel target: the action is allowed but keeps the current step.
STAY = None

_ANY_STEP_ACTIONS = frozenset({
    AddLog.kind,
    ClearLogs.kind,
    SetError.kind,
    OperationCancelled.kind,
})

_W = WorkflowStep

TRANSITIONS: Mapping[tuple[WorkflowStep, str], WorkflowStep | None] = MappingProxyType({
    (_W.WELCOME, Begin.kind): _W.MODE_SELECT,
    (_W.MODE_SELECT, ChooseManaged.kind): _W.TOKEN_ENTRY,
    (_W.MODE_SELECT, ChooseManual.kind): _W.MANUAL_CREDENTIALS,
    (_W.MODE_SELECT, Back.kind): _W.WELCOME,
    # Managed path.
    (_W.TOKEN_ENTRY, FetchOrgsStarted.kind): STAY,
    (_W.TOKEN_ENTRY, FetchOrgsFailed.kind): STAY,
    (_W.TOKEN_ENTRY, OrganizationsLoaded.kind): _W.ORG_SELECT,
    (_W.TOKEN_ENTRY, Back.kind): _W.MODE_SELECT,
    (_W.ORG_SELECT, SelectOrg.kind): STAY,
    (_W.ORG_SELECT, SetProjectName.kind): STAY,
    (_W.ORG_SELECT, SetRegion.kind): STAY,
    (_W.ORG_SELECT, ProvisioningStarted.kind): _W.PROVISIONING,
    (_W.ORG_SELECT, Back.kind): _W.TOKEN_ENTRY,
    (_W.PROVISIONING, IdentifierReceived.kind): STAY,
    (_W.PROVISIONING, ProvisioningSucceeded.kind): _W.MIGRATION,
    (_W.PROVISIONING, ProvisioningFailed.kind): STAY,
    (_W.PROVISIONING, ProvisioningStarted.kind): STAY,
    (_W.PROVISIONING, Back.kind): _W.TOKEN_ENTRY,
    # Manual path.
    (_W.MANUAL_CREDENTIALS, SetManualUrl.kind): STAY,
    (_W.MANUAL_CREDENTIALS, SetManualKey.kind): STAY,
    (_W.MANUAL_CREDENTIALS, ValidationStarted.kind): _W.VALIDATING,
    (_W.MANUAL_CREDENTIALS, Back.kind): _W.MODE_SELECT,
    (_W.VALIDATING, ValidationFailed.kind): _W.MANUAL_CREDENTIALS,
    (_W.VALIDATING, ValidationSucceeded.kind): STAY,
    (_W.VALIDATING, Complete.kind): STAY,
    # Migration.
    (_W.MIGRATION, MigrationStarted.kind): STAY,
    (_W.MIGRATION, MigrationFinished.kind): STAY,
    (_W.MIGRATION, SkipMigration.kind): STAY,
    (_W.MIGRATION, Complete.kind): STAY,
})


def allowed_actions(step: WorkflowStep) -> frozenset[str]:
    """Action kinds the table accepts in ``step``."""
    return frozenset(
        kind for (table_step, kind) in TRANSITIONS if table_step is step
    ) | _ANY_STEP_ACTIONS


def initial_state() -> WizardState:
    return WizardState()


# ── Handlers ────────────────────────────────────────────────────────
# Each handler receives the state with ``step`` already moved to the table
# target and returns the fully reduced state.


def _reject(state: WizardState, action: Action) -> InvalidWizardTransition:
    return InvalidWizardTransition(state.step.value, action.kind)


def _start_operation(state: WizardState, **changes: Any) -> WizardState:
    return replace(
        state,
        operation_generation=state.operation_generation + 1,
        error=None,
        logs=(),
        **changes,
    )


def _on_choose_managed(state: WizardState, action: ChooseManaged) -> WizardState:
    return replace(state, manual=ManualState(), error=None)


def _on_choose_manual(state: WizardState, action: ChooseManual) -> WizardState:
    return replace(state, managed=ManagedState(), error=None)


def _on_step_change(state: WizardState, action: Action) -> WizardState:
    return replace(state, error=None)


def _on_fetch_orgs_started(state: WizardState, action: FetchOrgsStarted) -> WizardState:
    return replace(state, managed=replace(state.managed, fetching_orgs=True), error=None)


def _on_fetch_orgs_failed(state: WizardState, action: FetchOrgsFailed) -> WizardState:
    return replace(
        state,
        managed=replace(state.managed, fetching_orgs=False),
        error=action.message or 'Failed to fetch organizations',
    )


def _on_organizations_loaded(state: WizardState, action: OrganizationsLoaded) -> WizardState:
    organizations = tuple(action.organizations)
    return replace(
        state,
        managed=replace(
            state.managed,
            organizations=organizations,
            selected_org=organizations[0].id if organizations else '',
            fetching_orgs=False,
        ),
        error=None,
    )


def _on_select_org(state: WizardState, action: SelectOrg) -> WizardState:
    return replace(state, managed=replace(state.managed, selected_org=action.org_id))


def _on_set_project_name(state: WizardState, action: SetProjectName) -> WizardState:
    return replace(state, managed=replace(state.managed, project_name=action.name))


def _on_set_region(state: WizardState, action: SetRegion) -> WizardState:
    return replace(state, managed=replace(state.managed, region=action.region))


def _on_set_manual_url(state: WizardState, action: SetManualUrl) -> WizardState:
    return replace(state, manual=replace(state.manual, url=action.url))


def _on_set_manual_key(state: WizardState, action: SetManualKey) -> WizardState:
    return replace(state, manual=replace(state.manual, key=action.key))


def _on_provisioning_started(state: WizardState, action: ProvisioningStarted) -> WizardState:
    return _start_operation(
        state,
        project_identifier='',
        provisioning_result=None,
        migration_status=None,
    )


def _on_identifier_received(state: WizardState, action: IdentifierReceived) -> WizardState:
    return replace(state, project_identifier=action.identifier)


def _on_provisioning_succeeded(state: WizardState, action: ProvisioningSucceeded) -> WizardState:
    if action.result is None:
        raise ValueError('provisioning_succeeded requires a result')
    return replace(
        state,
        provisioning_result=action.result,
        project_identifier=action.result.identifier,
        migration_status=action.migration_status,
        error=None,
    )


def _on_provisioning_failed(state: WizardState, action: ProvisioningFailed) -> WizardState:
    return replace(state, error=action.message or 'Provisioning failed')


def _on_back(state: WizardState, action: Back) -> WizardState:
    return replace(state, error=None)


def _on_validation_started(state: WizardState, action: ValidationStarted) -> WizardState:
    return _start_operation(state, migration_status=None)


def _on_validation_failed(state: WizardState, action: ValidationFailed) -> WizardState:
    return replace(state, error=action.message or 'Connection validation failed.')


def _on_validation_succeeded(state: WizardState, action: ValidationSucceeded) -> WizardState:
    status = action.migration_status
    next_step = (
        WorkflowStep.MIGRATION
        if status is None or status.needs_migration
        else WorkflowStep.VALIDATING
    )
    return replace(
        state,
        step=next_step,
        manual=replace(state.manual, url=action.url or state.manual.url),
        project_identifier=action.project_identifier or state.project_identifier,
        migration_status=status,
        error=None,
    )


def _on_migration_started(state: WizardState, action: MigrationStarted) -> WizardState:
    return replace(
        state,
        operation_generation=state.operation_generation + 1,
        error=None,
        logs=(),
        migrating=True,
        project_identifier=action.project_identifier or state.project_identifier,
    )


def _on_migration_finished(state: WizardState, action: MigrationFinished) -> WizardState:
    return replace(
        state,
        migrating=False,
        error=None if action.success else (action.message or 'Migration failed.'),
    )


def _on_complete(state: WizardState, action: Complete) -> WizardState:
    return replace(state, completed=True, migrating=False, error=None)


def _on_add_log(state: WizardState, action: AddLog) -> WizardState:
    if action.timestamp is None:
        raise ValueError('add_log requires a timestamp')
    entry = LogEntry(kind=action.log_kind, message=action.message, timestamp=action.timestamp)
    return replace(state, logs=append_log(state.logs, entry))


def _on_clear_logs(state: WizardState, action: ClearLogs) -> WizardState:
    return replace(state, logs=())


def _on_set_error(state: WizardState, action: SetError) -> WizardState:
    return replace(state, error=action.message)


def _on_operation_cancelled(state: WizardState, action: OperationCancelled) -> WizardState:
    # A cancelled validation returns to the credentials form.
    step = (
        WorkflowStep.MANUAL_CREDENTIALS
        if state.step is WorkflowStep.VALIDATING
        else state.step
    )
    return replace(
        state,
        step=step,
        operation_generation=state.operation_generation + 1,
        migrating=False,
        managed=replace(state.managed, fetching_orgs=False),
    )


_HANDLERS: Mapping[str, Callable[[WizardState, Any], WizardState]] = MappingProxyType({
    Begin.kind: _on_step_change,
    ChooseManaged.kind: _on_choose_managed,
    ChooseManual.kind: _on_choose_manual,
    Back.kind: _on_back,
    FetchOrgsStarted.kind: _on_fetch_orgs_started,
    FetchOrgsFailed.kind: _on_fetch_orgs_failed,
    OrganizationsLoaded.kind: _on_organizations_loaded,
    SelectOrg.kind: _on_select_org,
    SetProjectName.kind: _on_set_project_name,
    SetRegion.kind: _on_set_region,
    SetManualUrl.kind: _on_set_manual_url,
    SetManualKey.kind: _on_set_manual_key,
    ProvisioningStarted.kind: _on_provisioning_started,
    IdentifierReceived.kind: _on_identifier_received,
    ProvisioningSucceeded.kind: _on_provisioning_succeeded,
    ProvisioningFailed.kind: _on_provisioning_failed,
    ValidationStarted.kind: _on_validation_started,
    ValidationFailed.kind: _on_validation_failed,
    ValidationSucceeded.kind: _on_validation_succeeded,
    MigrationStarted.kind: _on_migration_started,
    MigrationFinished.kind: _on_migration_finished,
    SkipMigration.kind: _on_complete,
    Complete.kind: _on_complete,
    AddLog.kind: _on_add_log,
    ClearLogs.kind: _on_clear_logs,
    SetError.kind: _on_set_error,
    OperationCancelled.kind: _on_operation_cancelled,
})


def _check_guards(state: WizardState, action: Action) -> None:
    """Conditions that the (step, kind) table alone cannot express."""
    if isinstance(action, Back) and state.step is WorkflowStep.PROVISIONING:
        # Going back from provisioning is the retry affordance; only once
        # the run has failed.
        if state.error is None:
            raise _reject(state, action)
    elif isinstance(action, SkipMigration):
        if not state.can_skip_migration:
            raise _reject(state, action)
    elif isinstance(action, Complete):
        if state.migrating:
            raise _reject(state, action)
        if state.step is WorkflowStep.VALIDATING and (
            state.migration_status is None or state.migration_status.needs_migration
        ):
            raise _reject(state, action)
    elif isinstance(action, MigrationStarted) and state.migrating:
        raise _reject(state, action)


def is_stale(state: WizardState, action: Action) -> bool:
    generation = getattr(action, 'generation', None)
    return generation is not None and generation != state.operation_generation


def reduce(state: WizardState, action: Action) -> WizardState:
    """Apply ``action`` to ``state``.

    Raises:
        InvalidWizardTransition: The action is not allowed in the current
            step, or the wizard has already completed.
    """
    if is_stale(state, action):
        return state

    handler = _HANDLERS.get(action.kind)
    if handler is None or state.completed:
        raise _reject(state, action)

    if action.kind in _ANY_STEP_ACTIONS:
        return handler(state, action)

    key = (state.step, action.kind)
    if key not in TRANSITIONS:
        raise _reject(state, action)
    _check_guards(state, action)

    target = TRANSITIONS[key]
    moved = state if target is STAY else replace(state, step=target)
    return handler(moved, action)
