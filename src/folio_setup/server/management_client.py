"""Supabase Management API calls made on the user's behalf.

The setup API lists organizations, creates the project, polls its status and
reads its anon key through this client. The caller's personal access token is
passed to each call and never kept on the instance.

Reads are retried on timeouts and on 429/5xx answers (honoring Retry-After).
Project creation is sent exactly once; a retried POST could leave the user
with two projects.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

# Project states in which the REST endpoint and keys become usable.
READY_PROJECT_STATUSES = frozenset({"ACTIVE", "ACTIVE_HEALTHY"})

ANON_KEY_NAME = "anon"

_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})
_ENDPOINT_CHECK_TIMEOUT_SECONDS = 5.0


# ── Errors ───────────────────────────────────────────────────────


class ManagementAPIError(Exception):
    """The Management API refused a call or could not be reached."""

    def __init__(self, status_code: int, message: str = "", *, response_body: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Management API {status_code}: {message}")


class ManagementNotFoundError(ManagementAPIError):
    """No such project or organization for this token."""

    def __init__(self, message: str = "Not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class ManagementTimeoutError(ManagementAPIError):
    """Every attempt timed out."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(504, message)


def _error_from_response(resp: httpx.Response) -> ManagementAPIError:
    body = resp.text
    message = body[:200] or f"HTTP {resp.status_code}"
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for field in ("error", "message", "msg"):
            if payload.get(field):
                message = str(payload[field])
                break

    if resp.status_code == 404:
        return ManagementNotFoundError(message, response_body=body)
    return ManagementAPIError(resp.status_code, message, response_body=body)


# ── Retry policy ─────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times, and how long apart, transient failures are retried."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        # Full jitter: uniform in [0, capped exponential].
        return random.uniform(0, min(self.base_delay * (2 ** attempt), self.max_delay))

    def delay_after(self, resp: httpx.Response, attempt: int) -> float:
        retry_after = resp.headers.get("retry-after", "")
        try:
            return max(float(retry_after), 0.1)
        except ValueError:
            return self.backoff(attempt)


NO_RETRY = RetryPolicy(max_retries=0)


# ── Client ───────────────────────────────────────────────────────


class ManagementClient:
    def __init__(
        self,
        *,
        base_url: str = "https://api.supabase.com",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = float(timeout_seconds)
        self._retry = retry or RetryPolicy()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _call(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        body: Any | None = None,
        retry: RetryPolicy | None = None,
    ) -> Any:
        """Send one Management API call and return its decoded JSON body."""
        if not access_token:
            raise ValueError("access_token is required")
        policy = retry or self._retry
        headers = {"Authorization": f"Bearer {access_token}"}
        url = f"{self._base_url}{path}"

        attempt = 0
        while True:
            try:
                resp = await self._http.request(
                    method, url, headers=headers, json=body, timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                if attempt >= policy.max_retries:
                    raise ManagementTimeoutError(str(e) or "Request timed out") from e
                delay = policy.backoff(attempt)
                logger.warning("%s %s timed out, retry %d in %.1fs", method, path, attempt + 1, delay)
            except httpx.HTTPError as e:
                raise ManagementAPIError(
                    502, f"Upstream request failed ({type(e).__name__}): {e}",
                ) from e
            else:
                if resp.status_code not in _TRANSIENT_STATUSES or attempt >= policy.max_retries:
                    if resp.is_error:
                        raise _error_from_response(resp)
                    return resp.json()
                delay = policy.delay_after(resp, attempt)
                logger.warning(
                    "%s %s answered %d, retry %d in %.1fs",
                    method, path, resp.status_code, attempt + 1, delay,
                )
            await asyncio.sleep(delay)
            attempt += 1

    # ── Calls ────────────────────────────────────────────────────

    async def list_organizations(self, access_token: str) -> list[dict[str, Any]]:
        result = await self._call("GET", "/v1/organizations", access_token)
        if not isinstance(result, list):
            raise ManagementAPIError(
                502, f"Expected list from /v1/organizations, got {type(result).__name__}",
            )
        return result

    async def create_project(
        self,
        access_token: str,
        *,
        name: str,
        organization_id: str,
        region: str,
        db_pass: str,
    ) -> dict[str, Any]:
        result = await self._call(
            "POST",
            "/v1/projects",
            access_token,
            body={
                "name": name,
                "organization_id": organization_id,
                "region": region,
                "db_pass": db_pass,
            },
            retry=NO_RETRY,
        )
        logger.info("Project created", extra={"project_name": name, "region": region})
        return result if isinstance(result, dict) else {}

    async def get_project(self, access_token: str, project_ref: str) -> dict[str, Any]:
        """Project metadata including ``status``. Raises ManagementNotFoundError."""
        result = await self._call("GET", f"/v1/projects/{quote(project_ref, safe='')}", access_token)
        return result if isinstance(result, dict) else {}

    async def get_anon_key(self, access_token: str, project_ref: str) -> str:
        """The project's ``anon`` key, or ``""`` while it is not issued yet."""
        keys = await self._call(
            "GET", f"/v1/projects/{quote(project_ref, safe='')}/api-keys", access_token,
        )
        for item in keys if isinstance(keys, list) else ():
            if isinstance(item, dict) and item.get("name") == ANON_KEY_NAME:
                api_key = item.get("api_key")
                if isinstance(api_key, str) and api_key.strip():
                    return api_key
        return ""

    async def project_endpoint_ready(self, project_url: str) -> bool:
        """True once the project's REST root answers below 500 (DNS has propagated)."""
        try:
            resp = await self._http.get(
                f"{project_url.rstrip('/')}/rest/v1/", timeout=_ENDPOINT_CHECK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError:
            return False
        return resp.status_code < 500


def resolve_project_ref(payload: Any) -> str:
    """Pick the project ref out of a create-project response."""
    if not isinstance(payload, dict):
        return ""
    for key in ("ref", "id", "project_ref"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""
