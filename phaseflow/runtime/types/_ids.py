"""ID types and generators for the types package.

Provides instance, session and event ID generation, plus type aliases.
Event IDs are ULIDs so they sort by creation time.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

from ulid import ULID

# Type aliases
InstanceId = str
DefinitionId = str
SessionId = str


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(length))


def generate_instance_id() -> InstanceId:
    """Generate a unique workflow instance ID.

    Creates IDs in the format: wfi-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Example:
        >>> generate_instance_id()  # e.g., "wfi-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    return f"wfi-{now.strftime('%Y%m%d-%H%M%S')}-{_random_suffix()}"


def generate_session_id() -> SessionId:
    """Generate a capability invocation session ID."""
    return f"session-{uuid.uuid4().hex[:16]}"


def generate_event_id() -> str:
    """Generate a globally unique, time-ordered event ID (ULID)."""
    return str(ULID())
