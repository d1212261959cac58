"""Errors raised for failed requests to a project's PostgREST endpoint.

The project key never appears in these errors; only the status and the
PostgREST error body fields are kept.
"""

from __future__ import annotations

import httpx

# PostgreSQL: function does not exist.
UNDEFINED_FUNCTION_CODE = "42883"


class SupabaseError(Exception):
    """A PostgREST request answered with an error status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code
        self.hint = hint
        detail = f" [{code}]" if code else ""
        super().__init__(f"PostgREST {status_code}{detail}: {message}")

    @property
    def is_undefined_function(self) -> bool:
        return self.code == UNDEFINED_FUNCTION_CODE

    @classmethod
    def from_response(cls, resp: httpx.Response) -> SupabaseError:
        """Build the matching error subclass from a PostgREST error response."""
        message = resp.text or f"HTTP {resp.status_code}"
        code = hint = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("message") or message)
            code = body.get("code")
            hint = body.get("hint")

        err_cls = _ERRORS_BY_STATUS.get(resp.status_code, cls)
        return err_cls(resp.status_code, message, code=code, hint=hint)


class SupabaseAuthError(SupabaseError):
    """The key was rejected (wrong project, revoked key, paused project)."""


class SupabaseNotFoundError(SupabaseError):
    """No such route, typically an RPC the database does not define."""


_ERRORS_BY_STATUS: dict[int, type[SupabaseError]] = {
    401: SupabaseAuthError,
    403: SupabaseAuthError,
    404: SupabaseNotFoundError,
}
