"""Run a streamed setup operation and feed its events to a sink.

Provisioning and migration are long-running server operations whose
progress arrives as a ``data: {...}`` event stream. ``run_streamed_operation``:

1. sends the request and waits for the response headers;
2. fails fast with ``SetupRequestError`` on a non-2xx answer, before any
   streaming starts;
3. pumps the body through ``StreamEventParser`` and calls ``on_event`` for
   every event in arrival order;
4. enforces a hard deadline by cancelling the in-flight read and closing the
   response; a timed-out run ends like a truncated stream;
5. routes read-level failures to ``on_error`` so callers can tell "stream
   failed" apart from "stream ended cleanly with failure content".
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import httpx

from ..errors import SetupRequestError, StreamError
from ..models import StreamEvent
from .parser import StreamEventParser

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], None]
ErrorSink = Callable[[Exception], None]

# Per-read timeouts are disabled for streams; the operation deadline bounds
# the whole run instead.
_STREAM_HTTP_TIMEOUT = httpx.Timeout(30.0, read=None)


@dataclass(frozen=True, slots=True)
class StreamedRequest:
    method: str
    url: str
    json: Mapping[str, Any] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    error_code: str = 'REQUEST_FAILED'
    """Code attached to ``SetupRequestError`` when the request is rejected."""
    error_fallback: str = 'Request failed'
    """Message used when the error response carries none."""


@dataclass(slots=True)
class StreamRunResult:
    """What happened on the transport while the events were delivered."""

    event_count: int = 0
    dropped_lines: int = 0
    timed_out: bool = False
    stream_error: Exception | None = None

    @property
    def ended_cleanly(self) -> bool:
        return not self.timed_out and self.stream_error is None


def extract_error_message(body: bytes | str, fallback: str) -> str:
    """Pull a human message out of an error response body."""
    text = body.decode('utf-8', errors='replace') if isinstance(body, bytes) else body
    text = text.strip()
    if not text:
        return fallback
    try:
        payload = json.loads(text)
    except ValueError:
        return text[:500]
    if isinstance(payload, dict):
        for key in ('error', 'message', 'msg'):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


def request_error_from_response(
    status_code: int,
    body: bytes | str,
    *,
    fallback: str,
    code: str,
    hint: str | None = None,
) -> SetupRequestError:
    message = extract_error_message(body, f'{fallback} (HTTP {status_code})')
    return SetupRequestError(message, status_code=status_code, code=code, hint=hint)


async def run_streamed_operation(
    http_client: httpx.AsyncClient,
    request: StreamedRequest,
    on_event: EventSink,
    *,
    timeout_seconds: float,
    on_error: ErrorSink | None = None,
) -> StreamRunResult:
    """Issue ``request`` and deliver its events to ``on_event``.

    Raises:
        SetupRequestError: The request failed or was answered with non-2xx.
        StreamError: A read failed and no ``on_error`` was supplied.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds

    http_request = http_client.build_request(
        request.method,
        request.url,
        json=request.json,
        headers=dict(request.headers),
        timeout=_STREAM_HTTP_TIMEOUT,
    )

    try:
        response = await asyncio.wait_for(
            http_client.send(http_request, stream=True),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise SetupRequestError(
            f'{request.error_fallback}: no response within {timeout_seconds:.0f}s',
            status_code=0,
            code=request.error_code,
        ) from e
    except httpx.HTTPError as e:
        raise SetupRequestError(
            f'{request.error_fallback}: {type(e).__name__}: {e}',
            status_code=0,
            code=request.error_code,
        ) from e

    if not response.is_success:
        try:
            body = await response.aread()
        finally:
            await response.aclose()
        raise request_error_from_response(
            response.status_code,
            body,
            fallback=request.error_fallback,
            code=request.error_code,
        )

    parser = StreamEventParser()
    result = StreamRunResult()

    def _deliver(events: list[StreamEvent]) -> None:
        for event in events:
            result.event_count += 1
            on_event(event)

    async def _pump() -> None:
        async for chunk in response.aiter_bytes():
            _deliver(parser.feed(chunk))

    try:
        try:
            await asyncio.wait_for(_pump(), timeout=max(deadline - loop.time(), 0.0))
        except asyncio.TimeoutError:
            result.timed_out = True
            logger.warning(
                "Streamed operation cancelled after %.1fs deadline",
                timeout_seconds,
                extra={"url": request.url},
            )
        except httpx.HTTPError as e:
            result.stream_error = e
            logger.warning(
                "Streamed operation read failed: %s",
                type(e).__name__,
                extra={"url": request.url},
            )
            if on_error is None:
                raise StreamError(f'Stream error: {e}') from e
            on_error(e)
            return result

        _deliver(parser.flush())
        return result
    finally:
        await response.aclose()
        result.dropped_lines = parser.dropped_lines
