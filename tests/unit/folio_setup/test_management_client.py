"""Unit tests for ManagementClient.

Tests the Supabase Management API client with mocked httpx transport.
"""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from folio_setup.server.management_client import (
    ManagementAPIError,
    ManagementClient,
    ManagementNotFoundError,
    ManagementTimeoutError,
    RetryPolicy,
    resolve_project_ref,
)

TOKEN = 'sbp_0123456789abcdef0123'


def _make_client(handler, max_retries: int = 3) -> ManagementClient:
    return ManagementClient(
        base_url='https://api.supabase.test',
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry=RetryPolicy(max_retries=max_retries, base_delay=0.0),
    )


# ── Test: organizations ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_organizations_forwards_access_token():
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['url'] = str(request.url)
        seen['auth'] = request.headers['Authorization']
        return httpx.Response(200, json=[{'id': 'org1', 'name': 'Acme'}])

    orgs = await _make_client(handler).list_organizations(TOKEN)

    assert orgs == [{'id': 'org1', 'name': 'Acme'}]
    assert seen['url'] == 'https://api.supabase.test/v1/organizations'
    assert seen['auth'] == f'Bearer {TOKEN}'


@pytest.mark.asyncio
async def test_missing_token_is_rejected_locally():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError('no request expected')

    with pytest.raises(ValueError, match='access_token is required'):
        await _make_client(handler).list_organizations('')


# ── Test: retries ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_retries_transient_status():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) < 3:
            return httpx.Response(503, text='unavailable')
        return httpx.Response(200, json={'ref': 'abc', 'status': 'ACTIVE_HEALTHY'})

    project = await _make_client(handler).get_project(TOKEN, 'abc')

    assert project['status'] == 'ACTIVE_HEALTHY'
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_create_project_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.method)
        return httpx.Response(503, json={'message': 'try later'})

    with pytest.raises(ManagementAPIError) as exc_info:
        await _make_client(handler).create_project(
            TOKEN, name='Folio-Core', organization_id='org1', region='us-east-1', db_pass='pw',
        )

    assert attempts == ['POST']
    assert exc_info.value.status_code == 503
    assert exc_info.value.message == 'try later'


@pytest.mark.asyncio
async def test_timeout_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout('slow', request=request)

    with pytest.raises(ManagementTimeoutError):
        await _make_client(handler, max_retries=1).list_organizations(TOKEN)


@pytest.mark.asyncio
async def test_transport_error_maps_to_bad_gateway():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('refused', request=request)

    with pytest.raises(ManagementAPIError) as exc_info:
        await _make_client(handler).list_organizations(TOKEN)
    assert exc_info.value.status_code == 502


# ── Test: projects and keys ──────────────────────────────────────


@pytest.mark.asyncio
async def test_create_project_payload():
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        import json
        seen['body'] = json.loads(request.content)
        return httpx.Response(201, json={'id': 'newref', 'status': 'COMING_UP'})

    created = await _make_client(handler).create_project(
        TOKEN, name='Folio-Core', organization_id='org1', region='eu-west-1', db_pass='pw',
    )

    assert resolve_project_ref(created) == 'newref'
    assert seen['body'] == {
        'name': 'Folio-Core',
        'organization_id': 'org1',
        'region': 'eu-west-1',
        'db_pass': 'pw',
    }


@pytest.mark.asyncio
async def test_get_project_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={'message': 'Project not found'})

    with pytest.raises(ManagementNotFoundError, match='Project not found'):
        await _make_client(handler).get_project(TOKEN, 'missing')


@pytest.mark.asyncio
async def test_get_anon_key_picks_anon_entry():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == '/v1/projects/abc/api-keys'
        return httpx.Response(200, json=[
            {'name': 'service_role', 'api_key': 'eyJservice'},
            {'name': 'anon', 'api_key': 'eyJanon'},
        ])

    assert await _make_client(handler).get_anon_key(TOKEN, 'abc') == 'eyJanon'


@pytest.mark.asyncio
async def test_get_anon_key_not_issued_yet():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    assert await _make_client(handler).get_anon_key(TOKEN, 'abc') == ''


@pytest.mark.asyncio
async def test_project_endpoint_ready():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == 'https://abc.supabase.co/rest/v1/'
        return httpx.Response(401)

    assert await _make_client(handler).project_endpoint_ready('https://abc.supabase.co')


def test_resolve_project_ref_variants():
    assert resolve_project_ref({'ref': ' r1 '}) == 'r1'
    assert resolve_project_ref({'project_ref': 'r2'}) == 'r2'
    assert resolve_project_ref({'name': 'x'}) == ''
    assert resolve_project_ref(None) == ''


class TestRetryPolicy:
    def test_retry_after_header_wins(self):
        resp = httpx.Response(429, headers={'Retry-After': '7'})
        assert RetryPolicy().delay_after(resp, 0) == 7.0

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=2.0)
        assert all(0 <= policy.backoff(10) <= 2.0 for _ in range(20))

    def test_unparsable_retry_after_falls_back(self):
        resp = httpx.Response(503, headers={'Retry-After': 'soon'})
        assert RetryPolicy(base_delay=0.0).delay_after(resp, 2) == 0.0
