"""Async driver for the setup wizard.

``SetupOrchestrator`` owns the wizard state, the access-token holder and the
one streamed operation that may be in flight. It validates preconditions,
calls the setup API, turns stream events into reducer actions and invokes
credential recovery.

Every state change goes through ``reduce``; the orchestrator never mutates
state directly. Actions derived from a streamed operation are tagged with the
operation generation that was current when the run started, so a cancelled
run can never overwrite the state of a newer one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from ..api.setup_client import SetupApiClient
from ..config_store import LocalConfigStore, StoredConfig
from ..db.errors import SupabaseError
from ..errors import (
    InvalidWizardTransition,
    OperationInProgressError,
    ProvisioningFailedError,
    ProvisioningIncompleteError,
    SetupError,
)
from ..migration_check import (
    check_migration_status,
    fresh_project_snapshot,
    unverified_snapshot,
)
from ..models import (
    LogKind,
    MigrationStatusSnapshot,
    OperationResult,
    StreamEvent,
    StreamEventType,
    WorkflowStep,
)
from ..observability.logging import operation_ctx
from ..security.secrets import AccessTokenHolder
from ..settings import SetupSettings
from .recovery import (
    ProvisioningOutcome,
    ProvisioningRunTracker,
    classify,
    resolve_provisioning,
)
from .state_machine import (
    Action,
    AddLog,
    Back,
    Begin,
    ChooseManaged,
    ChooseManual,
    Complete,
    FetchOrgsFailed,
    FetchOrgsStarted,
    IdentifierReceived,
    MigrationFinished,
    MigrationStarted,
    OperationCancelled,
    OrganizationsLoaded,
    ProvisioningFailed,
    ProvisioningStarted,
    ProvisioningSucceeded,
    SelectOrg,
    SetError,
    SetManualKey,
    SetManualUrl,
    SetProjectName,
    SetRegion,
    SkipMigration,
    ValidationFailed,
    ValidationStarted,
    ValidationSucceeded,
    WizardState,
    initial_state,
    is_stale,
    reduce,
)
from .validators import (
    extract_project_identifier,
    normalize_url,
    validate_key_shape,
    validate_token,
    validate_url_shape,
)

logger = logging.getLogger(__name__)

MigrationChecker = Callable[[str, str], Awaitable[MigrationStatusSnapshot]]
StateListener = Callable[[WizardState], None]

MIGRATION_PRECONDITION_MESSAGE = 'Project ID and access token are required for migration.'
MIGRATION_INCOMPLETE_MESSAGE = 'Migration did not complete successfully.'
CANCELLED_MESSAGE = 'Operation cancelled. Retry to start again.'
SAVE_FAILED_MESSAGE = 'Could not save the Supabase configuration'

# Stream event types that become wizard log lines as-is.
_LOGGED_EVENT_KINDS = {
    StreamEventType.INFO: LogKind.INFO,
    StreamEventType.ERROR: LogKind.ERROR,
    StreamEventType.STDOUT: LogKind.STDOUT,
    StreamEventType.STDERR: LogKind.STDERR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _event_text(event: StreamEvent) -> str:
    return '' if event.data is None else str(event.data)


class SetupOrchestrator:
    """Drives one wizard instance from welcome to completion."""

    def __init__(
        self,
        *,
        api: SetupApiClient,
        config_store: LocalConfigStore,
        settings: SetupSettings | None = None,
        migration_checker: MigrationChecker | None = None,
        clock: Callable[[], datetime] = _utcnow,
        on_complete: Callable[[], None] | None = None,
    ) -> None:
        self._api = api
        self._config_store = config_store
        self._settings = settings or SetupSettings()
        self._migration_checker = migration_checker or self._default_migration_checker
        self._clock = clock
        self._on_complete = on_complete
        self._state = initial_state()
        self._token = AccessTokenHolder()
        self._listeners: list[StateListener] = []
        self._active_task: asyncio.Task | None = None
        self._active_name: str | None = None
        self._cancel_requested = False

    # ── State access ─────────────────────────────────────────────────

    @property
    def state(self) -> WizardState:
        return self._state

    @property
    def has_access_token(self) -> bool:
        return self._token.is_set

    @property
    def operation_running(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` after every applied action. Returns an unsubscriber."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def dispatch(self, action: Action) -> WizardState:
        if is_stale(self._state, action):
            logger.debug(
                'Discarding stale %s from generation %s (current %s)',
                action.kind,
                getattr(action, 'generation', None),
                self._state.operation_generation,
            )
            return self._state
        self._state = reduce(self._state, action)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def _log(self, kind: LogKind, message: str, generation: int | None = None) -> None:
        self.dispatch(
            AddLog(log_kind=kind, message=message, timestamp=self._clock(), generation=generation)
        )

    # ── Navigation ───────────────────────────────────────────────────

    def begin(self) -> WizardState:
        return self.dispatch(Begin())

    def choose_managed(self) -> WizardState:
        return self.dispatch(ChooseManaged())

    def choose_manual(self) -> WizardState:
        self._token.clear()
        return self.dispatch(ChooseManual())

    def back(self) -> WizardState:
        return self.dispatch(Back())

    def select_organization(self, org_id: str) -> WizardState:
        return self.dispatch(SelectOrg(org_id=org_id))

    def set_project_name(self, name: str) -> WizardState:
        return self.dispatch(SetProjectName(name=name))

    def set_region(self, region: str) -> WizardState:
        return self.dispatch(SetRegion(region=region))

    def set_manual_credentials(self, url: str, key: str) -> WizardState:
        self.dispatch(SetManualUrl(url=url))
        return self.dispatch(SetManualKey(key=key))

    def set_access_token(self, token: str) -> bool:
        """Hand the access token to the holder after a shape check.

        Accepted while entering the token, and on the migration step where
        the manual path asks for it.
        """
        if self._state.completed or self._state.step not in (
            WorkflowStep.TOKEN_ENTRY,
            WorkflowStep.MIGRATION,
        ):
            raise InvalidWizardTransition(self._state.step.value, 'set_access_token')
        validation = validate_token(token)
        if not validation.valid:
            self.dispatch(SetError(message=validation.message))
            return False
        self._token.set(token)
        self.dispatch(SetError(message=None))
        return True

    # ── Single-flight execution ──────────────────────────────────────

    async def _run_exclusive(self, name: str, factory: Callable[[], Awaitable[bool]]) -> bool:
        if self.operation_running:
            raise OperationInProgressError(f'{self._active_name} is already running')

        self._cancel_requested = False
        ctx_token = operation_ctx.set(name)
        try:
            task = asyncio.ensure_future(factory())
        finally:
            operation_ctx.reset(ctx_token)
        self._active_task = task
        self._active_name = name

        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested and task.cancelled():
                logger.info('%s cancelled', name)
                return False
            raise
        finally:
            if self._active_task is task:
                self._active_task = None
                self._active_name = None

    async def cancel(self) -> bool:
        """Abort the in-flight operation. Returns False if nothing was running."""
        task = self._active_task
        if task is None or task.done():
            return False

        self._cancel_requested = True
        task.cancel()
        await asyncio.wait({task})

        if not self._state.completed:
            self.dispatch(OperationCancelled())
            self.dispatch(SetError(message=CANCELLED_MESSAGE))
            self._log(LogKind.INFO, CANCELLED_MESSAGE)
        return True

    async def close(self) -> None:
        """Tear down: cancel any running operation and wipe the token."""
        try:
            await self.cancel()
        finally:
            self._token.clear()

    async def __aenter__(self) -> SetupOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _finish(self) -> None:
        self._token.clear()
        logger.info('Setup wizard completed')
        if self._on_complete is not None:
            self._on_complete()

    # ── Managed path ─────────────────────────────────────────────────

    async def fetch_organizations(self, token: str) -> bool:
        """Validate the token, remember it and load the organizations."""
        return await self._run_exclusive('fetch_organizations', lambda: self._fetch_organizations(token))

    async def _fetch_organizations(self, token: str) -> bool:
        self.dispatch(FetchOrgsStarted())

        validation = validate_token(token)
        if not validation.valid:
            self.dispatch(FetchOrgsFailed(message=validation.message))
            return False

        self._token.set(token)
        try:
            organizations = await self._api.list_organizations(self._token.read_for_call())
        except SetupError as e:
            logger.warning('Organization fetch failed: %s', e.message, extra={'code': e.code})
            self.dispatch(FetchOrgsFailed(message=e.message))
            return False

        logger.info('Fetched %d organizations', len(organizations))
        self.dispatch(OrganizationsLoaded(organizations=tuple(organizations)))
        return True

    async def provision(self) -> bool:
        """Create a project, recover if needed, then run its migration."""
        return await self._run_exclusive('provision', self._provision)

    async def _provision(self) -> bool:
        state = self._state
        if state.step not in (WorkflowStep.ORG_SELECT, WorkflowStep.PROVISIONING):
            raise InvalidWizardTransition(state.step.value, ProvisioningStarted.kind)
        if not state.managed.selected_org:
            self.dispatch(SetError(message='Select an organization to continue.'))
            return False
        if not self._token.is_set:
            self.dispatch(SetError(message='Access token is required for provisioning.'))
            return False

        self.dispatch(ProvisioningStarted())
        generation = self._state.operation_generation
        managed = self._state.managed
        self._log(LogKind.INFO, 'Starting managed provisioning...', generation)

        tracker = ProvisioningRunTracker()

        def on_event(event: StreamEvent) -> None:
            tracker.observe(event)
            if event.type is StreamEventType.IDENTIFIER and tracker.identifier:
                self.dispatch(IdentifierReceived(identifier=tracker.identifier, generation=generation))
            elif event.type in _LOGGED_EVENT_KINDS:
                self._log(_LOGGED_EVENT_KINDS[event.type], _event_text(event), generation)
                if event.type is StreamEventType.ERROR:
                    self.dispatch(SetError(message=_event_text(event), generation=generation))

        def on_error(error: Exception) -> None:
            tracker.record_stream_error(error)
            self._log(LogKind.ERROR, f'Provisioning stream error: {error}', generation)

        try:
            await self._api.auto_provision(
                self._token.read_for_call(),
                org_id=managed.selected_org,
                project_name=managed.project_name,
                region=managed.region,
                on_event=on_event,
                on_error=on_error,
            )
        except SetupError as e:
            logger.warning('Auto-provision request failed: %s', e.message, extra={'code': e.code})
            self._fail_provisioning(e.message, generation)
            return False

        if self._state.operation_generation != generation:
            return False

        if classify(tracker) is ProvisioningOutcome.IDENTIFIER_CAPTURED:
            self._log(
                LogKind.INFO,
                'Provisioning stream disconnected. Recovering credentials from existing project...',
                generation,
            )

        try:
            result = await resolve_provisioning(
                tracker,
                lambda identifier: self._api.recover_credentials(
                    self._token.read_for_call(), identifier,
                ),
            )
        except (ProvisioningFailedError, ProvisioningIncompleteError) as e:
            self._fail_provisioning(e.message, generation)
            return False

        if self._state.operation_generation != generation:
            return False

        if not self._apply_provisioning_result(result, generation):
            return False
        return await self._migrate(
            project_ref=result.identifier,
            url=result.endpoint_url,
            key=result.public_key,
        )

    def _fail_provisioning(self, message: str, generation: int) -> None:
        self.dispatch(ProvisioningFailed(message=message, generation=generation))
        self._log(LogKind.ERROR, message, generation)

    def _save_config(self, url: str, key: str) -> str | None:
        """Persist the connection record. Returns an error message on failure."""
        try:
            self._config_store.save(StoredConfig(url=normalize_url(url), key=key.strip()))
        except OSError as e:
            logger.error('%s: %s', SAVE_FAILED_MESSAGE, e)
            return f'{SAVE_FAILED_MESSAGE}: {e}'
        return None

    def _apply_provisioning_result(self, result: OperationResult, generation: int) -> bool:
        save_error = self._save_config(result.endpoint_url, result.public_key)
        if save_error is not None:
            self._fail_provisioning(save_error, generation)
            return False
        self.dispatch(
            ProvisioningSucceeded(
                result=result,
                migration_status=fresh_project_snapshot(self._settings.latest_migration_timestamp),
                generation=generation,
            )
        )
        self._log(LogKind.SUCCESS, 'Project ready. Starting migration...', generation)
        logger.info('Provisioned project %s', result.identifier)
        return True

    # ── Manual path ──────────────────────────────────────────────────

    async def validate_manual(self) -> bool:
        """Test the manual credentials and decide whether to migrate."""
        return await self._run_exclusive('validate_manual', self._validate_manual)

    async def _validate_manual(self) -> bool:
        state = self._state
        if state.step is not WorkflowStep.MANUAL_CREDENTIALS:
            raise InvalidWizardTransition(state.step.value, ValidationStarted.kind)

        for validation in (
            validate_url_shape(state.manual.url),
            validate_key_shape(state.manual.key),
        ):
            if not validation.valid:
                self.dispatch(SetError(message=validation.message))
                return False

        url = normalize_url(state.manual.url)
        key = state.manual.key.strip()

        self.dispatch(ValidationStarted())
        generation = self._state.operation_generation

        connection = await self._api.test_connection(url, key)
        if not connection.valid:
            logger.info('Manual credentials rejected: %s', connection.message)
            self.dispatch(ValidationFailed(message=connection.message, generation=generation))
            return False

        save_error = self._save_config(url, key)
        if save_error is not None:
            self.dispatch(ValidationFailed(message=save_error, generation=generation))
            return False
        identifier = extract_project_identifier(url) or ''

        try:
            status = await self._migration_checker(url, key)
        except (SetupError, SupabaseError, httpx.HTTPError) as e:
            logger.warning('Migration status check failed: %s', type(e).__name__)
            status = unverified_snapshot(self._settings.latest_migration_timestamp)
        except Exception:
            logger.exception('Migration status check raised unexpectedly')
            status = unverified_snapshot(self._settings.latest_migration_timestamp)

        self.dispatch(
            ValidationSucceeded(
                url=url,
                project_identifier=identifier,
                migration_status=status,
                generation=generation,
            )
        )
        if self._state.operation_generation != generation:
            return False

        if status is not None and not status.needs_migration:
            self.dispatch(Complete())
            self._finish()
        return True

    async def _default_migration_checker(self, url: str, key: str) -> MigrationStatusSnapshot:
        return await check_migration_status(
            url,
            key,
            expected_version=self._settings.latest_migration_timestamp,
        )

    # ── Migration ────────────────────────────────────────────────────

    async def run_migration(
        self,
        *,
        project_ref: str | None = None,
        url: str | None = None,
        key: str | None = None,
    ) -> bool:
        """Run (or retry) the migration for the resolved project."""
        return await self._run_exclusive(
            'run_migration',
            lambda: self._migrate(project_ref=project_ref, url=url, key=key),
        )

    async def _migrate(
        self,
        *,
        project_ref: str | None,
        url: str | None,
        key: str | None,
    ) -> bool:
        state = self._state
        if state.step is not WorkflowStep.MIGRATION:
            raise InvalidWizardTransition(state.step.value, MigrationStarted.kind)

        result = state.provisioning_result
        project_ref = (
            project_ref
            or state.project_identifier
            or extract_project_identifier(state.manual.url)
        )
        target_url = url or (result.endpoint_url if result else '') or state.manual.url
        target_key = key or (result.public_key if result else '') or state.manual.key

        if not project_ref or not self._token.is_set:
            self.dispatch(SetError(message=MIGRATION_PRECONDITION_MESSAGE))
            return False

        self.dispatch(MigrationStarted(project_identifier=project_ref))
        generation = self._state.operation_generation

        outcome: dict[str, object] = {'success': False, 'stream_error': None}

        def on_event(event: StreamEvent) -> None:
            if event.type is StreamEventType.DONE:
                outcome['success'] = event.is_done_success
            elif event.type in _LOGGED_EVENT_KINDS:
                self._log(_LOGGED_EVENT_KINDS[event.type], _event_text(event), generation)

        def on_error(error: Exception) -> None:
            outcome['stream_error'] = error

        try:
            run = await self._api.run_migration(
                self._token.read_for_call(),
                project_ref=project_ref,
                anon_key=target_key or None,
                on_event=on_event,
                on_error=on_error,
            )
        except SetupError as e:
            logger.warning('Migration request failed: %s', e.message, extra={'code': e.code})
            self._fail_migration(e.message, generation)
            return False

        if self._state.operation_generation != generation:
            return False

        if not outcome['success']:
            if outcome['stream_error'] is not None:
                message = f"Migration stream error: {outcome['stream_error']}"
            elif run.timed_out:
                message = (
                    f'Migration timed out after {self._api.migration_timeout_seconds:.0f}s. '
                    'Retry to continue.'
                )
            else:
                message = MIGRATION_INCOMPLETE_MESSAGE
            self._fail_migration(message, generation)
            return False

        if target_url and target_key:
            save_error = self._save_config(target_url, target_key)
            if save_error is not None:
                self._fail_migration(save_error, generation)
                return False

        self.dispatch(MigrationFinished(success=True, generation=generation))
        self._log(LogKind.SUCCESS, 'Migration completed. Setup is ready.', generation)
        logger.info('Migration completed for project %s', project_ref)
        self.dispatch(Complete())
        self._finish()
        return True

    def _fail_migration(self, message: str, generation: int) -> None:
        self.dispatch(MigrationFinished(success=False, message=message, generation=generation))
        self._log(LogKind.ERROR, message, generation)

    def skip_migration(self) -> WizardState:
        """Finish without migrating; only offered when the schema is current."""
        state = self.dispatch(SkipMigration())
        self._finish()
        return state
