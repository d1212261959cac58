"""Framing helpers for the server side of the event stream."""

from __future__ import annotations

import json
from typing import Any

EVENT_STREAM_MEDIA_TYPE = "text/event-stream"

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_event(event_type: str, data: Any) -> bytes:
    """Encode one event as ``data: <json>\\n\\n``."""
    payload = json.dumps({"type": event_type, "data": data}, separators=(",", ":"))
    return f"data: {payload}\n\n".encode("utf-8")
