"""
SSE formatting for the phaseflow API.

Event names on the wire are the engine's event kinds (phase-started,
phase-completed, phase-failed, approval-required) plus the stream control
events connected, heartbeat and done.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def format_sse_event(
    event_type: str,
    data: Dict[str, Any],
    event_id: Optional[str] = None,
    retry: Optional[int] = None,
) -> str:
    """Format an SSE event.

    SSE format:
        id: <event_id>
        event: <event_type>
        retry: <milliseconds>
        data: <json_data>

    Args:
        event_type: Event type name.
        data: Event data (will be JSON serialized).
        event_id: Optional event ID for resumption.
        retry: Optional retry interval in milliseconds.

    Returns:
        Formatted SSE event string.
    """
    lines = []

    if event_id:
        lines.append(f"id: {event_id}")

    if event_type:
        lines.append(f"event: {event_type}")

    if retry:
        lines.append(f"retry: {retry}")

    payload = dict(data)
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    payload.setdefault("type", event_type)

    lines.append(f"data: {json.dumps(payload, default=str)}")
    lines.append("")  # Empty line terminates event

    return "\n".join(lines) + "\n"
