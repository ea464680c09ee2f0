"""Event types published by the execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ._ids import InstanceId, generate_event_id
from ._time import _datetime_to_iso, utcnow


class EventKind(str, Enum):
    """Kinds of events surfaced to the presentation layer."""

    PHASE_STARTED = "phase-started"
    PHASE_COMPLETED = "phase-completed"
    PHASE_FAILED = "phase-failed"
    APPROVAL_REQUIRED = "approval-required"


@dataclass
class PhaseEvent:
    """A single phase or approval event for one instance.

    ``seq`` is assigned by the EventBus and increases monotonically per
    instance.
    """

    instance_id: InstanceId
    kind: EventKind
    phase_index: int
    phase_id: Any = None
    phase_name: str = ""
    ts: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=generate_event_id)
    seq: int = 0
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "seq": self.seq,
            "instanceId": self.instance_id,
            "kind": self.kind.value,
            "phaseIndex": self.phase_index,
            "phaseId": self.phase_id,
            "phaseName": self.phase_name,
            "ts": _datetime_to_iso(self.ts),
            "output": self.output,
            "error": self.error,
            "errorKind": self.error_kind,
        }
