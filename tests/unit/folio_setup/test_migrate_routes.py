"""Migration route tests.

The migration command is replaced with a short Python one-liner so the
stream, exit-code and environment handling run against a real subprocess.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys

import pytest
from fastapi.testclient import TestClient

from folio_setup.server import create_app, migrate_routes
from folio_setup.server.migrate_routes import MigrateRequest, migration_env
from folio_setup.settings import SetupSettings

BODY = {'projectRef': 'proj1', 'accessToken': 'sbp_0123456789abcdef0123', 'anonKey': 'eyJanon'}


def _client(script: str) -> TestClient:
    settings = SetupSettings(migrate_command=(sys.executable, '-c', script))
    return TestClient(create_app(settings))


def _events(response) -> list[dict]:
    return [
        json.loads(line[len('data: '):])
        for line in response.text.splitlines()
        if line.startswith('data: ')
    ]


def test_successful_run_streams_output():
    script = (
        "import os, sys; "
        "print('linking ' + os.environ['SUPABASE_PROJECT_ID']); "
        "print(); "
        "print('warn', file=sys.stderr)"
    )
    response = _client(script).post('/api/migrate', json=BODY)

    assert response.status_code == 200
    assert response.headers['content-type'].startswith('text/event-stream')
    events = _events(response)
    # stdout and stderr interleave nondeterministically; blank lines are dropped.
    assert sorted((e['type'], e['data']) for e in events[:-2]) == [
        ('stderr', 'warn'),
        ('stdout', 'linking proj1'),
    ]
    assert events[-2] == {'type': 'info', 'data': 'Migration completed successfully.'}
    assert events[-1] == {'type': 'done', 'data': 'success'}


def test_nonzero_exit_fails():
    response = _client("import sys; print('boom'); sys.exit(3)").post('/api/migrate', json=BODY)

    events = _events(response)
    assert events[0] == {'type': 'stdout', 'data': 'boom'}
    assert events[-2] == {'type': 'error', 'data': 'Migration failed with code 3'}
    assert events[-1] == {'type': 'done', 'data': 'failed'}


def test_unstartable_command_fails():
    settings = SetupSettings(migrate_command=('/nonexistent/folio-migrate',))
    response = TestClient(create_app(settings)).post('/api/migrate', json=BODY)

    events = _events(response)
    assert [e['type'] for e in events] == ['error', 'done']
    assert events[0]['data'].startswith('Failed to run migration:')
    assert events[1]['data'] == 'failed'


def test_missing_fields_are_rejected():
    response = _client('pass').post('/api/migrate', json={'projectRef': 'proj1'})
    assert response.status_code == 422


def test_migration_env_carries_credentials():
    env = migration_env(MigrateRequest(projectRef='proj1', accessToken='tok'))
    assert env['SUPABASE_PROJECT_ID'] == 'proj1'
    assert env['SUPABASE_ACCESS_TOKEN'] == 'tok'
    assert env['SUPABASE_ANON_KEY'] == ''


def test_overlong_line_does_not_stall_the_stream(monkeypatch):
    monkeypatch.setattr(migrate_routes, '_STREAM_LINE_LIMIT', 256)
    script = "print('x' * 5000, flush=True); print('after')"
    response = _client(script).post('/api/migrate', json=BODY)

    events = _events(response)
    stdout = [e['data'] for e in events if e['type'] == 'stdout']
    assert any(line.startswith('[output line over 256 bytes omitted]') for line in stdout)
    assert stdout[-1] == 'after'
    assert events[-1] == {'type': 'done', 'data': 'success'}


# ── Process shutdown ──────────────────────────────────────────────


async def _spawn(script: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        sys.executable, '-c', script, stdout=asyncio.subprocess.PIPE,
    )


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == 'win32', reason='POSIX signals')
async def test_terminate_reaps_the_process():
    proc = await _spawn("import time; print('ready', flush=True); time.sleep(60)")
    assert await proc.stdout.readline() == b'ready\n'

    await migrate_routes._terminate(proc, 'proj1')

    assert proc.returncode == -signal.SIGTERM


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == 'win32', reason='POSIX signals')
async def test_terminate_kills_a_process_ignoring_sigterm(monkeypatch):
    monkeypatch.setattr(migrate_routes, '_TERMINATE_GRACE_SECONDS', 0.2)
    proc = await _spawn(
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(60)"
    )
    assert await proc.stdout.readline() == b'ready\n'

    await migrate_routes._terminate(proc, 'proj1')

    assert proc.returncode == -signal.SIGKILL
