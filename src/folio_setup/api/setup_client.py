"""Async HTTP client for the setup API.

Wraps the five endpoints the wizard consumes:

- ``GET  /api/setup/organizations``                     (bearer)
- ``POST /api/setup/auto-provision``                    (bearer, streamed)
- ``GET  /api/setup/projects/{identifier}/credentials`` (bearer)
- ``POST /api/migrate``                                 (streamed)
- ``POST /api/setup/test-connection``

The access token is passed per call and never stored on the client.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import SetupRequestError
from ..models import OperationResult, Organization, ValidationResult
from ..settings import MIGRATION_TIMEOUT_SECONDS, PROVISION_TIMEOUT_SECONDS
from ..streaming.client import (
    ErrorSink,
    EventSink,
    StreamedRequest,
    StreamRunResult,
    request_error_from_response,
    run_streamed_operation,
)

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 30.0

# Status codes where the local setup API is most likely not running.
_API_DOWN_STATUS_CODES = frozenset({500, 502})
_API_DOWN_HINT = "If the local setup API is not running, start it and retry."


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Client ───────────────────────────────────────────────────────


class SetupApiClient:
    """Request surface of the provisioning & migration orchestrator."""

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        provision_timeout_seconds: float = PROVISION_TIMEOUT_SECONDS,
        migration_timeout_seconds: float = MIGRATION_TIMEOUT_SECONDS,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")

        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self.provision_timeout_seconds = float(provision_timeout_seconds)
        self.migration_timeout_seconds = float(migration_timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    def _bearer(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        code: str,
        fallback: str,
        headers: dict[str, str] | None = None,
        json: Any | None = None,
        hint_on_api_down: bool = False,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                self._url(path),
                headers=headers,
                json=json,
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise SetupRequestError(
                f"{fallback}: {type(e).__name__}",
                status_code=0,
                code=code,
                hint=_API_DOWN_HINT if hint_on_api_down else None,
            ) from e

        if not resp.is_success:
            hint = None
            if hint_on_api_down and resp.status_code in _API_DOWN_STATUS_CODES:
                hint = _API_DOWN_HINT
            raise request_error_from_response(
                resp.status_code,
                resp.content,
                fallback=fallback,
                code=code,
                hint=hint,
            )
        return resp

    # ── Plain request/response calls ─────────────────────────────

    async def list_organizations(self, access_token: str) -> list[Organization]:
        resp = await self._request(
            "GET",
            "/api/setup/organizations",
            headers=self._bearer(access_token),
            code="FETCH_ORGS_FAILED",
            fallback="Failed to fetch organizations",
            hint_on_api_down=True,
        )
        try:
            payload = resp.json()
        except ValueError as e:
            raise SetupRequestError(
                "Organization list was not valid JSON",
                status_code=resp.status_code,
                code="FETCH_ORGS_FAILED",
            ) from e
        if not isinstance(payload, list):
            raise SetupRequestError(
                f"Expected a list of organizations, got {type(payload).__name__}",
                status_code=resp.status_code,
                code="FETCH_ORGS_FAILED",
            )
        return [
            Organization(id=str(item["id"]), name=str(item.get("name") or item["id"]))
            for item in payload
            if isinstance(item, dict) and item.get("id")
        ]

    async def recover_credentials(
        self,
        access_token: str,
        identifier: str,
    ) -> OperationResult:
        """Idempotent fetch of current credentials for an existing project."""
        resp = await self._request(
            "GET",
            f"/api/setup/projects/{quote(identifier, safe='')}/credentials",
            headers=self._bearer(access_token),
            code="RECOVERY_FAILED",
            fallback="Failed to recover project credentials",
        )
        try:
            return OperationResult.from_payload(resp.json(), fallback_identifier=identifier)
        except ValueError as e:
            raise SetupRequestError(
                f"Recovered credentials were incomplete: {e}",
                status_code=resp.status_code,
                code="RECOVERY_FAILED",
            ) from e

    async def test_connection(self, url: str, key: str) -> ValidationResult:
        """Connectivity check for manually supplied credentials.

        A 4xx answer carrying ``{valid: false}`` is a failed check, not a
        request error.
        """
        try:
            resp = await self._client.request(
                "POST",
                self._url("/api/setup/test-connection"),
                json={"url": url, "key": key},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            return ValidationResult(False, f"Connection test failed: {type(e).__name__}")

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and "valid" in payload:
            message = payload.get("message") or payload.get("error") or ""
            valid = bool(payload["valid"]) and resp.is_success
            if not message:
                message = "Connection verified" if valid else f"Connection failed ({resp.status_code})"
            return ValidationResult(valid, str(message))

        return ValidationResult(False, f"Connection failed ({resp.status_code})")

    # ── Streamed operations ──────────────────────────────────────

    async def auto_provision(
        self,
        access_token: str,
        *,
        org_id: str,
        project_name: str,
        region: str,
        on_event: EventSink,
        on_error: ErrorSink | None = None,
    ) -> StreamRunResult:
        request = StreamedRequest(
            method="POST",
            url=self._url("/api/setup/auto-provision"),
            json={"orgId": org_id, "projectName": project_name, "region": region},
            headers=self._bearer(access_token),
            error_code="PROVISION_FAILED",
            error_fallback="Failed to auto-provision",
        )
        logger.info("Starting auto-provision: project=%s region=%s", project_name, region)
        return await run_streamed_operation(
            self._client,
            request,
            on_event,
            timeout_seconds=self.provision_timeout_seconds,
            on_error=on_error,
        )

    async def run_migration(
        self,
        access_token: str,
        *,
        project_ref: str,
        anon_key: str | None,
        on_event: EventSink,
        on_error: ErrorSink | None = None,
    ) -> StreamRunResult:
        body: dict[str, Any] = {"projectRef": project_ref, "accessToken": access_token}
        if anon_key:
            body["anonKey"] = anon_key
        request = StreamedRequest(
            method="POST",
            url=self._url("/api/migrate"),
            json=body,
            error_code="MIGRATION_FAILED",
            error_fallback="Failed to run migration",
        )
        logger.info("Starting migration: project=%s", project_ref)
        return await run_streamed_operation(
            self._client,
            request,
            on_event,
            timeout_seconds=self.migration_timeout_seconds,
            on_error=on_error,
        )
