"""Recovery procedure tests: three-way classification of provisioning runs."""

from __future__ import annotations

import httpx
import pytest

from folio_setup.errors import (
    ProvisioningFailedError,
    ProvisioningIncompleteError,
    SetupRequestError,
)
from folio_setup.models import OperationResult, StreamEvent, StreamEventType
from folio_setup.wizard.recovery import (
    MALFORMED_SUCCESS_MESSAGE,
    STREAM_ENDED_MESSAGE,
    ProvisioningOutcome,
    ProvisioningRunTracker,
    classify,
    resolve_provisioning,
)

RECOVERED = OperationResult('X', 'https://X.supabase.co', 'eyJrecovered')


class _Recorder:
    def __init__(self, result=RECOVERED, error=None):
        self.calls: list[str] = []
        self._result = result
        self._error = error

    async def __call__(self, identifier: str) -> OperationResult:
        self.calls.append(identifier)
        if self._error is not None:
            raise self._error
        return self._result


def _tracker(*events: StreamEvent) -> ProvisioningRunTracker:
    tracker = ProvisioningRunTracker()
    for event in events:
        tracker.observe(event)
    return tracker


def _ev(event_type: StreamEventType, data=None) -> StreamEvent:
    return StreamEvent(event_type, data)


class TestClassify:
    def test_success_event_wins(self):
        tracker = _tracker(
            _ev(StreamEventType.IDENTIFIER, 'p1'),
            _ev(StreamEventType.SUCCESS, {'url': 'https://p1.supabase.co', 'anonKey': 'eyJk'}),
        )
        assert classify(tracker) is ProvisioningOutcome.SUCCEEDED
        assert tracker.result.identifier == 'p1'

    def test_error_event(self):
        tracker = _tracker(_ev(StreamEventType.IDENTIFIER, 'p1'), _ev(StreamEventType.ERROR, 'boom'))
        assert classify(tracker) is ProvisioningOutcome.ERROR_OBSERVED

    def test_first_error_is_kept(self):
        tracker = _tracker(_ev(StreamEventType.ERROR, 'first'), _ev(StreamEventType.ERROR, 'second'))
        assert tracker.error_message == 'first'

    def test_identifier_only(self):
        assert classify(_tracker(_ev(StreamEventType.IDENTIFIER, 'X'))) is (
            ProvisioningOutcome.IDENTIFIER_CAPTURED
        )

    def test_nothing(self):
        assert classify(_tracker(_ev(StreamEventType.INFO, 'hi'))) is ProvisioningOutcome.NOTHING_USABLE

    def test_malformed_success_is_not_success(self):
        tracker = _tracker(_ev(StreamEventType.IDENTIFIER, 'X'), _ev(StreamEventType.SUCCESS, {'url': 'u'}))
        assert tracker.malformed_success
        assert classify(tracker) is ProvisioningOutcome.IDENTIFIER_CAPTURED


class TestResolve:
    @pytest.mark.asyncio
    async def test_identifier_then_close_recovers_once(self):
        recover = _Recorder()
        tracker = _tracker(_ev(StreamEventType.IDENTIFIER, 'X'), _ev(StreamEventType.DONE, 'failed'))

        result = await resolve_provisioning(tracker, recover)

        assert result == RECOVERED
        assert recover.calls == ['X']

    @pytest.mark.asyncio
    async def test_error_never_recovers(self):
        recover = _Recorder()
        tracker = _tracker(
            _ev(StreamEventType.IDENTIFIER, 'X'),
            _ev(StreamEventType.ERROR, 'boom'),
            _ev(StreamEventType.DONE, 'failed'),
        )

        with pytest.raises(ProvisioningFailedError) as exc_info:
            await resolve_provisioning(tracker, recover)

        assert exc_info.value.message == 'boom'
        assert recover.calls == []

    @pytest.mark.asyncio
    async def test_nothing_usable_reports_stream_end(self):
        recover = _Recorder()
        with pytest.raises(ProvisioningIncompleteError) as exc_info:
            await resolve_provisioning(_tracker(), recover)
        assert exc_info.value.message == STREAM_ENDED_MESSAGE
        assert recover.calls == []

    @pytest.mark.asyncio
    async def test_success_without_credentials_is_reported(self):
        recover = _Recorder()
        tracker = _tracker(_ev(StreamEventType.SUCCESS, {'url': 'u'}), _ev(StreamEventType.DONE, 'success'))

        with pytest.raises(ProvisioningIncompleteError) as exc_info:
            await resolve_provisioning(tracker, recover)

        assert exc_info.value.message == MALFORMED_SUCCESS_MESSAGE
        assert recover.calls == []

    @pytest.mark.asyncio
    async def test_stream_error_is_mentioned(self):
        tracker = _tracker()
        tracker.record_stream_error(httpx.ReadError('connection reset'))
        with pytest.raises(ProvisioningIncompleteError, match='ReadError: connection reset'):
            await resolve_provisioning(tracker, _Recorder())

    @pytest.mark.asyncio
    async def test_failed_recovery_is_incomplete(self):
        recover = _Recorder(error=SetupRequestError('not ready', status_code=425))
        tracker = _tracker(_ev(StreamEventType.IDENTIFIER, 'X'))

        with pytest.raises(ProvisioningIncompleteError) as exc_info:
            await resolve_provisioning(tracker, recover)

        assert 'Provisioning incomplete for project X' in exc_info.value.message
        assert recover.calls == ['X']

    @pytest.mark.asyncio
    async def test_success_skips_recovery(self):
        recover = _Recorder()
        tracker = _tracker(_ev(StreamEventType.SUCCESS, {'projectId': 'p9', 'anonKey': 'eyJk'}))
        result = await resolve_provisioning(tracker, recover)
        assert result.identifier == 'p9'
        assert result.endpoint_url == 'https://p9.supabase.co'
        assert recover.calls == []
