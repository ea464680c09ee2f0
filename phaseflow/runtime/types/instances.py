"""Instance types: running workflow instances, phase records and version locks."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ._ids import DefinitionId, InstanceId, SessionId
from ._time import _datetime_to_iso


class InstanceStatus(str, Enum):
    """Lifecycle status of a workflow instance."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


@dataclass
class LoopState:
    """State handed to a loop continuation predicate before each iteration.

    Attributes:
        instance_id: Instance running the loop.
        phase_index: Index of the loop phase.
        phase_id: Manifest id of the loop phase.
        iteration: Number of iterations already completed.
        last_outputs: Outputs of the inner phases from the previous iteration.
        variables: Instance context variables.
    """

    instance_id: InstanceId
    phase_index: int
    phase_id: Any
    iteration: int
    last_outputs: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)


LoopPredicate = Callable[[LoopState], bool]


@dataclass
class ExecutionContext:
    """Caller-supplied context for an instance.

    Only the serializable fields are persisted; ``loop_predicate`` lives
    with the running instance and is inherited by sub-workflows.
    """

    owner_id: Optional[str] = None
    project_id: Optional[str] = None
    project_folder: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    loop_predicate: Optional[LoopPredicate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "projectId": self.project_id,
            "projectFolder": self.project_folder,
            "variables": dict(self.variables),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionContext":
        data = data or {}
        return cls(
            owner_id=data.get("ownerId"),
            project_id=data.get("projectId"),
            project_folder=data.get("projectFolder"),
            variables=dict(data.get("variables") or {}),
        )

    def for_child(self) -> "ExecutionContext":
        """Context handed to a nested sub-workflow instance."""
        return replace(self, variables=dict(self.variables))


@dataclass
class WorkflowInstance:
    """One execution of a definition pinned to a specific version.

    Mutated only by the ExecutionEngine; retained after a terminal status.
    """

    id: InstanceId
    definition_id: DefinitionId
    version: str
    status: InstanceStatus
    current_phase: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    parent_instance_id: Optional[InstanceId] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_phase: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "definitionId": self.definition_id,
            "version": self.version,
            "status": self.status.value,
            "currentPhase": self.current_phase,
            "context": self.context,
            "parentInstanceId": self.parent_instance_id,
            "createdAt": _datetime_to_iso(self.created_at),
            "updatedAt": _datetime_to_iso(self.updated_at),
            "startedAt": _datetime_to_iso(self.started_at),
            "completedAt": _datetime_to_iso(self.completed_at),
            "error": self.error,
            "errorKind": self.error_kind,
            "errorPhase": self.error_phase,
        }


@dataclass
class PhaseExecutionRecord:
    """Append-only record of one phase execution within an instance.

    A record is "open" until ``completed_at`` is set; at most one record
    per instance is open at any time.
    """

    id: int
    instance_id: InstanceId
    phase_index: int
    phase_id: Any
    status: str
    started_at: datetime
    session_id: Optional[SessionId] = None
    capability_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instanceId": self.instance_id,
            "phaseIndex": self.phase_index,
            "phaseId": self.phase_id,
            "status": self.status,
            "sessionId": self.session_id,
            "capabilityId": self.capability_id,
            "output": self.output,
            "error": self.error,
            "startedAt": _datetime_to_iso(self.started_at),
            "completedAt": _datetime_to_iso(self.completed_at),
        }


@dataclass(frozen=True)
class VersionLock:
    """Advisory, shared marker that an instance runs against a definition version."""

    definition_id: DefinitionId
    version: str
    instance_id: InstanceId
    locked_at: Optional[datetime] = None
