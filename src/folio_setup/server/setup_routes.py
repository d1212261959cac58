"""Setup API routes consumed by the wizard.

Exposes the managed-backend side of the setup protocol:
  GET  /api/setup/organizations                      → organizations for the token
  POST /api/setup/auto-provision                     → event stream
  GET  /api/setup/projects/{project_ref}/credentials → idempotent recovery
  POST /api/setup/test-connection                    → credential check

Bearer-authenticated routes forward the caller's Supabase access token to
the Management API and never persist it.

Auto-provision stream contract (one JSON object per ``data:`` line):
  info* → project_id → info* → success → done("success")
  or, on any failure: ... → error → done("failed")
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import AsyncIterator

import httpx
from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..db.errors import SupabaseError
from ..db.supabase_client import SupabaseClient
from ..settings import SetupSettings
from ..streaming.wire import EVENT_STREAM_HEADERS, EVENT_STREAM_MEDIA_TYPE, format_event
from ..wizard.state_machine import DEFAULT_REGION
from .management_client import (
    READY_PROJECT_STATUSES,
    ManagementAPIError,
    ManagementClient,
    resolve_project_ref,
)

logger = logging.getLogger(__name__)

PROJECT_URL_TEMPLATE = 'https://{ref}.supabase.co'

# Readiness budget for the three waits after project creation.
_ANON_KEY_ATTEMPTS = 10
_ENDPOINT_READY_ATTEMPTS = 20
_ENDPOINT_PROGRESS_EVERY = 5

PUBLISHABLE_KEY_PREFIX = 'sb_publishable_'
LEGACY_KEY_PREFIX = 'eyJ'
CONNECTION_VERIFIED_MESSAGE = 'Supabase connection verified'
PUBLISHABLE_KEY_ACCEPTED_MESSAGE = 'Publishable key accepted'
CONNECTION_TIMEOUT_MESSAGE = (
    'Connection validation timed out (12s). Check project URL/key and network.'
)
# PostgREST "no rows" answer; the project is reachable and accepted the key.
_NO_ROWS_CODE = 'PGRST116'


# ── Request schemas ───────────────────────────────────────────────────


class AutoProvisionRequest(BaseModel):
    orgId: str = Field(min_length=1)
    projectName: str | None = None
    region: str | None = None


class TestConnectionRequest(BaseModel):
    url: str = Field(min_length=1)
    key: str = Field(min_length=1)


# ── Helpers ───────────────────────────────────────────────────────────


class _ProvisioningAborted(Exception):
    """A provisioning step gave up; the message is shown to the user."""


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def _missing_auth() -> JSONResponse:
    return JSONResponse(status_code=401, content={'error': 'Missing Authorization header'})


def _upstream_error(exc: ManagementAPIError) -> JSONResponse:
    status = exc.status_code if exc.status_code >= 400 else 502
    return JSONResponse(status_code=status, content={'error': exc.message or str(exc)})


def _invalid_connection(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={'valid': False, 'message': message})


def generate_db_password() -> str:
    """Random database password that satisfies Supabase's complexity rules."""
    return f'{secrets.token_urlsafe(16)}1!Aa'


def default_project_name() -> str:
    return f'Folio-{secrets.token_hex(2)}'


# ── Route factory ─────────────────────────────────────────────────────


def create_setup_router(
    management: ManagementClient,
    settings: SetupSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> APIRouter:
    """Create the setup router.

    Args:
        management: Management API client used for every bearer route.
        settings: Poll interval and status-poll budget for provisioning.
        http_client: Client for probing user-supplied project URLs.

    Returns:
        FastAPI router with the setup endpoints.
    """
    router = APIRouter(prefix='/api/setup', tags=['setup'])
    poll_interval = settings.provision_poll_interval_seconds
    max_status_polls = settings.provision_max_status_polls

    async def _wait_for_anon_key(access_token: str, project_ref: str) -> str:
        for attempt in range(1, _ANON_KEY_ATTEMPTS + 1):
            if attempt > 1:
                await asyncio.sleep(poll_interval)
            try:
                anon_key = await management.get_anon_key(access_token, project_ref)
            except ManagementAPIError as exc:
                logger.debug('API key fetch failed for %s: %s', project_ref, exc.message)
                continue
            if anon_key:
                return anon_key
        return ''

    async def _provision_events(
        access_token: str,
        body: AutoProvisionRequest,
    ) -> AsyncIterator[bytes]:
        project_name = (body.projectName or '').strip() or default_project_name()
        region = body.region or DEFAULT_REGION
        db_pass = generate_db_password()

        try:
            yield format_event('info', f'Creating project {project_name} in {region}...')
            created = await management.create_project(
                access_token,
                name=project_name,
                organization_id=body.orgId,
                region=region,
                db_pass=db_pass,
            )
            project_ref = resolve_project_ref(created)
            if not project_ref:
                raise _ProvisioningAborted('Project creation returned no project id')

            yield format_event('project_id', project_ref)
            yield format_event('info', f'Project created ({project_ref}). Waiting for readiness...')

            ready = False
            for attempt in range(1, max_status_polls + 1):
                await asyncio.sleep(poll_interval)
                try:
                    project = await management.get_project(access_token, project_ref)
                except ManagementAPIError:
                    yield format_event(
                        'info', f'Status check retry ({attempt}/{max_status_polls})...',
                    )
                    continue
                status = project.get('status') or 'unknown'
                yield format_event('info', f'Status: {status} ({attempt}/{max_status_polls})')
                if status in READY_PROJECT_STATUSES:
                    ready = True
                    break
            if not ready:
                raise _ProvisioningAborted('Project provisioning timed out')

            yield format_event('info', 'Retrieving API keys...')
            anon_key = ''
            for attempt in range(1, _ANON_KEY_ATTEMPTS + 1):
                try:
                    anon_key = await management.get_anon_key(access_token, project_ref)
                except ManagementAPIError:
                    anon_key = ''
                if anon_key:
                    break
                yield format_event(
                    'info', f'API keys not ready ({attempt}/{_ANON_KEY_ATTEMPTS}), retrying...',
                )
                await asyncio.sleep(poll_interval)
            if not anon_key:
                raise _ProvisioningAborted('Could not retrieve anon key for project')

            project_url = PROJECT_URL_TEMPLATE.format(ref=project_ref)
            yield format_event('info', 'Waiting for DNS propagation...')
            for attempt in range(1, _ENDPOINT_READY_ATTEMPTS + 1):
                if await management.project_endpoint_ready(project_url):
                    break
                if attempt % _ENDPOINT_PROGRESS_EVERY == 0:
                    yield format_event('info', 'DNS still propagating...')
                await asyncio.sleep(poll_interval)
            else:
                yield format_event('info', 'DNS check timed out, continuing anyway.')

            logger.info('Auto-provision succeeded', extra={'project_ref': project_ref})
            yield format_event('success', {
                'url': project_url,
                'anonKey': anon_key,
                'projectId': project_ref,
                'dbPass': db_pass,
            })
            yield format_event('done', 'success')
        except (ManagementAPIError, _ProvisioningAborted) as exc:
            message = exc.message if isinstance(exc, ManagementAPIError) else str(exc)
            logger.error(
                'Auto-provision failed: %s',
                message,
                extra={'status_code': getattr(exc, 'status_code', None)},
            )
            yield format_event('error', message or 'Auto-provisioning failed')
            yield format_event('done', 'failed')

    @router.get('/organizations')
    async def list_organizations(authorization: str | None = Header(default=None)):
        access_token = _bearer_token(authorization)
        if access_token is None:
            return _missing_auth()
        try:
            return await management.list_organizations(access_token)
        except ManagementAPIError as exc:
            logger.warning(
                'Organization fetch failed: %s',
                exc.message,
                extra={'status_code': exc.status_code},
            )
            return _upstream_error(exc)

    @router.post('/auto-provision')
    async def auto_provision(
        body: AutoProvisionRequest,
        authorization: str | None = Header(default=None),
    ):
        """Create a project and stream progress until its credentials are ready."""
        access_token = _bearer_token(authorization)
        if access_token is None:
            return _missing_auth()
        return StreamingResponse(
            _provision_events(access_token, body),
            media_type=EVENT_STREAM_MEDIA_TYPE,
            headers=EVENT_STREAM_HEADERS,
        )

    @router.get('/projects/{project_ref}/credentials')
    async def project_credentials(
        project_ref: str,
        authorization: str | None = Header(default=None),
    ):
        """Fetch credentials of an existing project. Safe to call repeatedly."""
        access_token = _bearer_token(authorization)
        if access_token is None:
            return _missing_auth()
        project_ref = project_ref.strip()
        if not project_ref:
            return JSONResponse(status_code=400, content={'error': 'Missing projectRef'})

        try:
            project = await management.get_project(access_token, project_ref)
        except ManagementAPIError as exc:
            logger.warning(
                'Project credential recovery failed: %s',
                exc.message,
                extra={'project_ref': project_ref, 'status_code': exc.status_code},
            )
            return _upstream_error(exc)

        status = project.get('status') if isinstance(project.get('status'), str) else 'unknown'
        anon_key = await _wait_for_anon_key(access_token, project_ref)
        if not anon_key:
            return JSONResponse(
                status_code=425,
                content={
                    'error': 'Project exists, but anon API key is not ready yet. Retry shortly.',
                    'status': status,
                },
            )

        return {
            'projectId': project_ref,
            'status': status,
            'url': PROJECT_URL_TEMPLATE.format(ref=project_ref),
            'anonKey': anon_key,
        }

    @router.post('/test-connection')
    async def test_connection(body: TestConnectionRequest):
        """Check manually supplied credentials.

        Publishable keys are accepted on format alone; the REST root does not
        take them. Legacy JWT keys must be answered by the project itself.
        """
        url = body.url.strip().rstrip('/')
        key = body.key.strip()
        if not url.startswith(('http://', 'https://')):
            return _invalid_connection('Invalid URL format')
        if key.startswith(PUBLISHABLE_KEY_PREFIX):
            return {'valid': True, 'message': PUBLISHABLE_KEY_ACCEPTED_MESSAGE}
        if not key.startswith(LEGACY_KEY_PREFIX):
            return _invalid_connection('Invalid anon key format')

        client = SupabaseClient(supabase_url=url, api_key=key, http_client=http_client)
        try:
            await client.check_rest_root()
        except SupabaseError as exc:
            if exc.code != _NO_ROWS_CODE:
                logger.info('Connection check rejected: HTTP %d', exc.status_code)
                return _invalid_connection(
                    exc.message or f'Connection failed ({exc.status_code})'
                )
        except httpx.TimeoutException:
            return _invalid_connection(CONNECTION_TIMEOUT_MESSAGE)
        except httpx.HTTPError as exc:
            return _invalid_connection(f'Could not reach project ({type(exc).__name__})')
        return {'valid': True, 'message': CONNECTION_VERIFIED_MESSAGE}

    return router
