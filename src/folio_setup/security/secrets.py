"""Ownership-scoped holder for the Management API access token.

The wizard needs the user's personal access token (``sbp_...``) for the
organization listing, provisioning, recovery and migration calls. The token
is kept out of the wizard state and lives here instead.

Security invariants:
  - The token is never included in ``str()`` or ``repr()`` output.
  - The holder cannot be pickled or copied.
  - ``clear()`` overwrites the stored bytes before releasing them.
  - Only the orchestrator mutates the holder; callers read it at call time
    via ``read_for_call()`` and must not keep the returned value around.
"""

from __future__ import annotations

from typing import NoReturn

from ..errors import SecretUnavailableError


class AccessTokenHolder:
    """Transient, explicitly clearable secret holder."""

    __slots__ = ('_buffer',)

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def is_set(self) -> bool:
        return len(self._buffer) > 0

    def set(self, token: str) -> None:
        """Replace the held token. Blank input clears the holder."""
        self.clear()
        value = token.strip()
        if value:
            self._buffer = bytearray(value.encode('utf-8'))

    def read_for_call(self) -> str:
        """Return the token for one outgoing call.

        Raises:
            SecretUnavailableError: If no token is held.
        """
        if not self._buffer:
            raise SecretUnavailableError(
                'Access token is required for this step.',
            )
        return self._buffer.decode('utf-8')

    def clear(self) -> None:
        """Zero and drop the held token. Idempotent."""
        for index in range(len(self._buffer)):
            self._buffer[index] = 0
        self._buffer = bytearray()

    # ── Leak guards ─────────────────────────────────────────────────

    def __repr__(self) -> str:
        state = 'set' if self.is_set else 'empty'
        return f'AccessTokenHolder(<redacted>, {state})'

    def __str__(self) -> str:
        return self.__repr__()

    def __reduce__(self) -> NoReturn:
        raise TypeError('AccessTokenHolder cannot be serialized')

    def __copy__(self) -> NoReturn:
        raise TypeError('AccessTokenHolder cannot be copied')

    def __deepcopy__(self, memo: dict) -> NoReturn:
        raise TypeError('AccessTokenHolder cannot be copied')
