"""Resolve inconclusive provisioning runs.

A provisioning stream can end (``done`` observed, read loop exits, deadline
hit or connection cut) without a ``success`` event. The outcome is then
classified three ways:

1. an ``error`` event was seen: the server reported a definitive failure;
   its message is reported verbatim and nothing is retried;
2. a project identifier was captured: the project probably exists, so its
   credentials are fetched once through the idempotent recovery endpoint;
3. nothing usable arrived: the user is told to retry.

This keeps the wizard from reporting failure when the project was actually
created, and from declaring success without confirmed credentials.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..errors import (
    ProvisioningFailedError,
    ProvisioningIncompleteError,
    SetupError,
)
from ..models import OperationResult, StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

RecoveryFetch = Callable[[str], Awaitable[OperationResult]]

STREAM_ENDED_MESSAGE = 'Provisioning stream ended unexpectedly. Retry or use manual setup.'
MALFORMED_SUCCESS_MESSAGE = (
    'Provisioning reported success without usable credentials. Retry or use manual setup.'
)


class ProvisioningOutcome(enum.Enum):
    SUCCEEDED = 'succeeded'
    ERROR_OBSERVED = 'error_observed'
    IDENTIFIER_CAPTURED = 'identifier_captured'
    NOTHING_USABLE = 'nothing_usable'


@dataclass(slots=True)
class ProvisioningRunTracker:
    """Facts gathered from one provisioning stream."""

    identifier: str = ''
    result: OperationResult | None = None
    error_message: str | None = None
    stream_error: Exception | None = None
    malformed_success: bool = False

    def observe(self, event: StreamEvent) -> None:
        if event.type is StreamEventType.IDENTIFIER:
            if event.data is not None and str(event.data).strip():
                self.identifier = str(event.data).strip()
        elif event.type is StreamEventType.ERROR:
            # The first error is the one the server reported as the cause.
            if self.error_message is None:
                self.error_message = str(event.data)
        elif event.type is StreamEventType.SUCCESS:
            try:
                self.result = OperationResult.from_payload(
                    event.data, fallback_identifier=self.identifier,
                )
            except ValueError:
                self.malformed_success = True
                logger.warning('Ignoring success event without usable credentials')
                return
            self.identifier = self.result.identifier

    def record_stream_error(self, error: Exception) -> None:
        self.stream_error = error


def classify(tracker: ProvisioningRunTracker) -> ProvisioningOutcome:
    if tracker.result is not None:
        return ProvisioningOutcome.SUCCEEDED
    if tracker.error_message is not None:
        return ProvisioningOutcome.ERROR_OBSERVED
    if tracker.identifier:
        return ProvisioningOutcome.IDENTIFIER_CAPTURED
    return ProvisioningOutcome.NOTHING_USABLE


def incomplete_message(identifier: str) -> str:
    return (
        f'Provisioning incomplete for project {identifier}. '
        'Retry in a moment or use manual setup.'
    )


async def resolve_provisioning(
    tracker: ProvisioningRunTracker,
    recover: RecoveryFetch,
) -> OperationResult:
    """Turn a finished run into credentials or a classified failure.

    ``recover`` is invoked at most once, and only for an identifier-captured
    run.

    Raises:
        ProvisioningFailedError: The server reported an error.
        ProvisioningIncompleteError: Nothing confirmed success.
    """
    outcome = classify(tracker)
    logger.info('Provisioning outcome: %s', outcome.value)

    if outcome is ProvisioningOutcome.SUCCEEDED and tracker.result is not None:
        return tracker.result

    if outcome is ProvisioningOutcome.ERROR_OBSERVED:
        raise ProvisioningFailedError(tracker.error_message or 'Provisioning failed')

    if outcome is ProvisioningOutcome.IDENTIFIER_CAPTURED:
        logger.info(
            'Provisioning stream ended without credentials; recovering project %s',
            tracker.identifier,
        )
        try:
            return await recover(tracker.identifier)
        except SetupError as e:
            logger.warning(
                'Credential recovery failed for project %s: %s',
                tracker.identifier,
                e.message,
            )
            raise ProvisioningIncompleteError(incomplete_message(tracker.identifier)) from e

    message = MALFORMED_SUCCESS_MESSAGE if tracker.malformed_success else STREAM_ENDED_MESSAGE
    if tracker.stream_error is not None:
        message = f'{message} ({type(tracker.stream_error).__name__}: {tracker.stream_error})'
    raise ProvisioningIncompleteError(message)
