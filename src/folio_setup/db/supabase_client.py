"""Direct calls to a target project's PostgREST endpoint.

Two calls are needed during setup: the REST-root check behind
test-connection and the RPC that reports the latest applied migration.
Both authenticate with the project's anon or publishable key.
"""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from .errors import SupabaseError

DEFAULT_TIMEOUT_SECONDS = 12.0

# Legacy anon keys are JWTs; publishable keys are opaque.
_JWT_PREFIX = "eyJ"


def project_key_headers(api_key: str) -> dict[str, str]:
    """Headers that authenticate a request with a project key."""
    headers = {"apikey": api_key}
    if api_key.startswith(_JWT_PREFIX):
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class SupabaseClient:
    """PostgREST client bound to one project URL and key."""

    def __init__(
        self,
        *,
        supabase_url: str,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        project_url = supabase_url.strip().rstrip("/")
        if not project_url:
            raise ValueError("Project URL is required")
        if not api_key.strip():
            raise ValueError("Project API key is required")

        self.rest_url = f"{project_url}/rest/v1"
        self._headers = project_key_headers(api_key.strip())
        self._http = http_client
        self._timeout = float(timeout_seconds)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.rest_url}{path}"
        if self._http is not None:
            resp = await self._http.request(
                method, url, headers=self._headers, timeout=self._timeout, **kwargs,
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as http:
                resp = await http.request(method, url, headers=self._headers, **kwargs)

        if resp.is_error:
            raise SupabaseError.from_response(resp)
        return resp

    async def check_rest_root(self) -> None:
        """GET the REST root.

        Raises:
            SupabaseError: the project answered with an error status.
            httpx.HTTPError: the project could not be reached.
        """
        await self._send("GET", "/")

    async def rpc(self, function_name: str, params: Mapping[str, Any] | None = None) -> Any:
        """Call a database function exposed through PostgREST and return its JSON result."""
        resp = await self._send("POST", f"/rpc/{function_name}", json=dict(params or {}))
        return resp.json()
