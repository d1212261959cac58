"""Wizard state machine tests: transition table, guards, generations, log cap."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from folio_setup.errors import InvalidWizardTransition
from folio_setup.models import (
    LogEntry,
    LogKind,
    MigrationStatusSnapshot,
    OperationResult,
    Organization,
    WorkflowStep,
)
from folio_setup.wizard.state_machine import (
    MAX_LOG_ENTRIES,
    TRANSITIONS,
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
    SkipMigration,
    ValidationFailed,
    ValidationStarted,
    ValidationSucceeded,
    allowed_actions,
    append_log,
    initial_state,
    reduce,
)


def _t(seconds: int) -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def _apply(state, *actions):
    for action in actions:
        state = reduce(state, action)
    return state


NEEDS = MigrationStatusSnapshot(True, '20250101000000', None, 'Fresh project created.')
CURRENT = MigrationStatusSnapshot(False, '20250101000000', '20250101000000', 'Up to date.')
RESULT = OperationResult('abc123', 'https://abc123.supabase.co', 'eyJ' + 'k' * 60, 'dbpass')
ORGS = (Organization('org1', 'Acme'), Organization('org2', 'Beta'))


def _at_org_select():
    return _apply(
        initial_state(),
        Begin(),
        ChooseManaged(),
        FetchOrgsStarted(),
        OrganizationsLoaded(organizations=ORGS),
    )


class TestManagedPath:
    def test_happy_path_reaches_migration(self):
        state = _at_org_select()
        assert state.step is WorkflowStep.ORG_SELECT
        assert state.managed.selected_org == 'org1'
        assert not state.managed.fetching_orgs

        state = _apply(state, SelectOrg(org_id='org2'), ProvisioningStarted())
        assert state.step is WorkflowStep.PROVISIONING
        generation = state.operation_generation
        assert generation == 1

        state = _apply(
            state,
            IdentifierReceived(identifier='abc123', generation=generation),
            ProvisioningSucceeded(result=RESULT, migration_status=NEEDS, generation=generation),
        )
        assert state.step is WorkflowStep.MIGRATION
        assert state.project_identifier == 'abc123'
        assert state.provisioning_result == RESULT

        state = _apply(state, MigrationStarted(project_identifier='abc123'))
        assert state.migrating
        state = _apply(
            state,
            MigrationFinished(success=True, generation=state.operation_generation),
            Complete(),
        )
        assert state.completed
        assert not state.migrating

    def test_fetch_failure_stays_on_token_entry(self):
        state = _apply(
            initial_state(), Begin(), ChooseManaged(), FetchOrgsStarted(),
            FetchOrgsFailed(message='Invalid access token'),
        )
        assert state.step is WorkflowStep.TOKEN_ENTRY
        assert state.error == 'Invalid access token'
        assert not state.managed.fetching_orgs

    def test_provisioning_failure_then_retry(self):
        state = _apply(_at_org_select(), ProvisioningStarted())
        state = reduce(state, ProvisioningFailed(message='boom', generation=state.operation_generation))
        assert state.step is WorkflowStep.PROVISIONING
        assert state.error == 'boom'

        retried = reduce(state, ProvisioningStarted())
        assert retried.error is None
        assert retried.logs == ()
        assert retried.operation_generation == state.operation_generation + 1

    def test_back_from_provisioning_requires_error(self):
        state = _apply(_at_org_select(), ProvisioningStarted())
        with pytest.raises(InvalidWizardTransition):
            reduce(state, Back())

        failed = reduce(state, ProvisioningFailed(message='boom', generation=state.operation_generation))
        assert reduce(failed, Back()).step is WorkflowStep.TOKEN_ENTRY


class TestManualPath:
    def _at_validating(self):
        return _apply(
            initial_state(), Begin(), ChooseManual(),
            SetManualUrl(url='abc123'), SetManualKey(key='eyJ' + 'k' * 60),
            ValidationStarted(),
        )

    def test_validation_failure_returns_to_credentials(self):
        state = self._at_validating()
        state = reduce(state, ValidationFailed(message='bad key', generation=state.operation_generation))
        assert state.step is WorkflowStep.MANUAL_CREDENTIALS
        assert state.error == 'bad key'

    def test_validation_needing_migration_moves_to_migration(self):
        state = self._at_validating()
        state = reduce(state, ValidationSucceeded(
            url='https://abc123.supabase.co',
            project_identifier='abc123',
            migration_status=NEEDS,
            generation=state.operation_generation,
        ))
        assert state.step is WorkflowStep.MIGRATION
        assert state.manual.url == 'https://abc123.supabase.co'
        assert not state.can_skip_migration

    def test_up_to_date_database_completes_from_validating(self):
        state = self._at_validating()
        state = reduce(state, ValidationSucceeded(
            project_identifier='abc123',
            migration_status=CURRENT,
            generation=state.operation_generation,
        ))
        assert state.step is WorkflowStep.VALIDATING
        assert reduce(state, Complete()).completed

    def test_complete_rejected_while_validation_pending(self):
        with pytest.raises(InvalidWizardTransition):
            reduce(self._at_validating(), Complete())

    def test_cancelled_validation_returns_to_credentials(self):
        state = self._at_validating()
        old_generation = state.operation_generation
        state = reduce(state, OperationCancelled())

        assert state.step is WorkflowStep.MANUAL_CREDENTIALS
        assert state.manual.url == 'abc123'
        assert reduce(
            state, ValidationSucceeded(migration_status=CURRENT, generation=old_generation),
        ) is state
        # The form is editable again and a new validation can start.
        state = _apply(state, SetManualUrl(url='def456'), ValidationStarted())
        assert state.step is WorkflowStep.VALIDATING
        assert state.manual.url == 'def456'


class TestMigrationGuards:
    def _at_migration(self, status):
        state = _apply(_at_org_select(), ProvisioningStarted())
        return reduce(state, ProvisioningSucceeded(
            result=RESULT, migration_status=status, generation=state.operation_generation,
        ))

    def test_skip_only_when_not_needed(self):
        with pytest.raises(InvalidWizardTransition):
            reduce(self._at_migration(NEEDS), SkipMigration())
        assert reduce(self._at_migration(CURRENT), SkipMigration()).completed

    def test_no_second_migration_while_running(self):
        state = reduce(self._at_migration(NEEDS), MigrationStarted(project_identifier='abc123'))
        with pytest.raises(InvalidWizardTransition):
            reduce(state, MigrationStarted(project_identifier='abc123'))
        with pytest.raises(InvalidWizardTransition):
            reduce(state, Complete())

    def test_failed_migration_keeps_step_with_error(self):
        state = reduce(self._at_migration(NEEDS), MigrationStarted(project_identifier='abc123'))
        state = reduce(state, MigrationFinished(
            success=False, message='exit 1', generation=state.operation_generation,
        ))
        assert state.step is WorkflowStep.MIGRATION
        assert state.error == 'exit 1'
        assert not state.migrating


class TestInvalidTransitions:
    def test_unlisted_pair_raises(self):
        with pytest.raises(InvalidWizardTransition, match="'provisioning_started'"):
            reduce(initial_state(), ProvisioningStarted())

    def test_every_table_entry_is_reachable_by_kind(self):
        for (step, kind) in TRANSITIONS:
            assert kind in allowed_actions(step)

    def test_completed_state_rejects_everything(self):
        state = reduce(TestMigrationGuards()._at_migration(CURRENT), SkipMigration())
        with pytest.raises(InvalidWizardTransition):
            reduce(state, Back())
        with pytest.raises(InvalidWizardTransition):
            reduce(state, SetError(message='late'))


class TestGenerationGuard:
    def test_stale_actions_leave_state_unchanged(self):
        state = _apply(_at_org_select(), ProvisioningStarted())
        old_generation = state.operation_generation
        state = reduce(state, OperationCancelled())

        for stale in (
            IdentifierReceived(identifier='ghost', generation=old_generation),
            ProvisioningFailed(message='late failure', generation=old_generation),
            SetError(message='late', generation=old_generation),
            AddLog(log_kind=LogKind.INFO, message='late', timestamp=_t(0), generation=old_generation),
        ):
            assert reduce(state, stale) is state

    def test_untagged_actions_always_apply(self):
        state = _apply(_at_org_select(), ProvisioningStarted(), OperationCancelled())
        assert reduce(state, SetError(message='cancelled')).error == 'cancelled'


class TestLogCap:
    def test_append_log_evicts_oldest(self):
        logs = ()
        for i in range(MAX_LOG_ENTRIES + 1):
            logs = append_log(logs, LogEntry(LogKind.STDOUT, f'line {i}', _t(i)))
        assert len(logs) == MAX_LOG_ENTRIES
        assert logs[0].message == 'line 1'
        assert logs[-1].message == f'line {MAX_LOG_ENTRIES}'

    def test_reducer_never_exceeds_cap(self):
        state = initial_state()
        for i in range(MAX_LOG_ENTRIES + 1):
            state = reduce(state, AddLog(log_kind=LogKind.INFO, message=str(i), timestamp=_t(i)))
        assert len(state.logs) == MAX_LOG_ENTRIES
        assert state.logs[0].message == '1'


def test_to_dict_never_contains_secrets():
    state = _apply(_at_org_select(), ProvisioningStarted())
    state = reduce(state, ProvisioningSucceeded(
        result=RESULT, migration_status=NEEDS, generation=state.operation_generation,
    ))
    rendered = repr(state.to_dict())
    assert 'dbpass' not in rendered
    assert 'sbp_' not in rendered
    assert state.to_dict()['step'] == 'migration'
