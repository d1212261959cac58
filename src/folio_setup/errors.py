"""Error hierarchy for the setup orchestrator.

Errors carry a short machine-readable ``code`` next to the human message so
the wizard can show the message while tests and logs match on the code.
None of these errors ever embed the access token or project keys.
"""

from __future__ import annotations


class SetupError(Exception):
    """Base class for every failure surfaced by the setup workflow."""

    default_code = "SETUP_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)


# ── Request / stream errors ─────────────────────────────────────


class SetupRequestError(SetupError):
    """Non-2xx answer from the setup API before any streaming started."""

    default_code = "REQUEST_FAILED"

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.hint = hint
        full = f"{message} {hint}" if hint else message
        super().__init__(full, code=code)


class StreamError(SetupError):
    """The response stream failed mid-read."""

    default_code = "STREAM_ERROR"


# ── Workflow outcomes ───────────────────────────────────────────


class ProvisioningFailedError(SetupError):
    """The server reported a definitive provisioning failure."""

    default_code = "PROVISION_FAILED"


class ProvisioningIncompleteError(SetupError):
    """Provisioning ended without credentials and recovery did not help."""

    default_code = "PROVISION_INCOMPLETE"


# ── Local invariants ────────────────────────────────────────────


class SecretUnavailableError(SetupError):
    """The access token was read while the holder was empty."""

    default_code = "SECRET_UNAVAILABLE"


class InvalidWizardTransition(SetupError):
    """An action is not allowed in the wizard's current step."""

    default_code = "INVALID_TRANSITION"

    def __init__(self, step: str, action: str) -> None:
        self.step = step
        self.action = action
        super().__init__(f"action {action!r} is not allowed in step {step!r}")


class OperationInProgressError(SetupError):
    """A second streamed operation was started while one is running."""

    default_code = "OPERATION_IN_PROGRESS"
