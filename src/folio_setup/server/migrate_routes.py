"""Migration route: run the migration command and stream its output.

  POST /api/migrate  {projectRef, accessToken, anonKey?} → event stream

Each non-empty output line becomes a ``stdout`` / ``stderr`` event. Exit code
0 ends with ``info`` + ``done("success")``; anything else with ``error`` +
``done("failed")``. If the client disconnects the process is terminated.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..settings import SetupSettings
from ..streaming.wire import EVENT_STREAM_HEADERS, EVENT_STREAM_MEDIA_TYPE, format_event

logger = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for some CLI output.
_STREAM_LINE_LIMIT = 1 << 20

# How long a terminated migration gets to exit before it is killed.
_TERMINATE_GRACE_SECONDS = 5.0

_EOF = None


class MigrateRequest(BaseModel):
    projectRef: str = Field(min_length=1)
    accessToken: str = Field(min_length=1)
    anonKey: str | None = None


def _exit_label(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f'Migration failed with code null (signal: {name})'
    return f'Migration failed with code {returncode}'


def migration_env(body: MigrateRequest) -> dict[str, str]:
    """Environment for the migration command. Inherits the server's."""
    return {
        **os.environ,
        'SUPABASE_PROJECT_ID': body.projectRef,
        'SUPABASE_ACCESS_TOKEN': body.accessToken,
        'SUPABASE_ANON_KEY': body.anonKey or '',
        'SKIP_FUNCTIONS': os.environ.get('SKIP_FUNCTIONS', '0'),
    }


async def _pump_lines(
    stream: asyncio.StreamReader,
    kind: str,
    queue: asyncio.Queue,
) -> None:
    """Forward non-empty lines until EOF, then enqueue ``_EOF``.

    An over-long line is replaced by a notice and reading continues, so the
    pipe keeps draining and the process can exit.
    """
    try:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # readline() has already discarded the over-long line.
                await queue.put((kind, f'[output line over {_STREAM_LINE_LIMIT} bytes omitted]'))
                continue
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            if line.strip():
                await queue.put((kind, line))
    finally:
        await queue.put(_EOF)


async def _terminate(proc: asyncio.subprocess.Process, project_ref: str) -> None:
    """Stop the migration process and reap it; SIGKILL if SIGTERM is ignored."""
    if proc.returncode is not None:
        return
    logger.info(
        'Migration process stopped after client disconnect',
        extra={'project_ref': project_ref},
    )
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), _TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            'Migration process ignored SIGTERM, killing it',
            extra={'project_ref': project_ref},
        )
        proc.kill()
        await proc.wait()


def create_migrate_router(settings: SetupSettings) -> APIRouter:
    router = APIRouter(tags=['migrate'])

    async def _migration_events(body: MigrateRequest) -> AsyncIterator[bytes]:
        logger.info('Starting migration', extra={'project_ref': body.projectRef})
        try:
            proc = await asyncio.create_subprocess_exec(
                *settings.migrate_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=migration_env(body),
                cwd=str(settings.migrate_cwd) if settings.migrate_cwd else None,
                limit=_STREAM_LINE_LIMIT,
            )
        except OSError as exc:
            logger.error('Failed to start migration command: %s', exc)
            yield format_event('error', f'Failed to run migration: {exc}')
            yield format_event('done', 'failed')
            return

        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(_pump_lines(proc.stdout, 'stdout', queue)),
            asyncio.create_task(_pump_lines(proc.stderr, 'stderr', queue)),
        ]
        finished = False
        try:
            open_streams = len(readers)
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                yield format_event(*item)
            returncode = await proc.wait()
            finished = True
        finally:
            if not finished:
                await _terminate(proc, body.projectRef)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        if returncode == 0:
            logger.info('Migration succeeded', extra={'project_ref': body.projectRef})
            yield format_event('info', 'Migration completed successfully.')
            yield format_event('done', 'success')
        else:
            logger.warning(
                'Migration exited with %s',
                returncode,
                extra={'project_ref': body.projectRef},
            )
            yield format_event('error', _exit_label(returncode))
            yield format_event('done', 'failed')

    @router.post('/api/migrate')
    async def migrate(body: MigrateRequest):
        """Run the migration command for ``projectRef`` and stream its output."""
        return StreamingResponse(
            _migration_events(body),
            media_type=EVENT_STREAM_MEDIA_TYPE,
            headers=EVENT_STREAM_HEADERS,
        )

    return router
