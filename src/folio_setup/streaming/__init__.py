"""Event-stream parsing and streamed operation client."""

from .client import (
    StreamedRequest,
    StreamRunResult,
    extract_error_message,
    request_error_from_response,
    run_streamed_operation,
)
from .parser import DATA_PREFIX, StreamEventParser, aiter_events
from .wire import EVENT_STREAM_MEDIA_TYPE, format_event

__all__ = [
    'DATA_PREFIX',
    'EVENT_STREAM_MEDIA_TYPE',
    'StreamEventParser',
    'StreamRunResult',
    'StreamedRequest',
    'aiter_events',
    'extract_error_message',
    'format_event',
    'request_error_from_response',
    'run_streamed_operation',
]
