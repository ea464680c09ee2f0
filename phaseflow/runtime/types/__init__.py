"""Core data types for phaseflow.

Re-exports every public type so callers can write
``from phaseflow.runtime.types import WorkflowDefinition, InstanceStatus``.
"""

from ._ids import (
    DefinitionId,
    InstanceId,
    SessionId,
    generate_event_id,
    generate_instance_id,
    generate_session_id,
)
from ._time import utcnow
from .definitions import (
    PhaseType,
    Position,
    WorkflowDefinition,
    WorkflowDependencies,
    WorkflowPhase,
    parse_phase_type,
)
from .events import EventKind, PhaseEvent
from .instances import (
    TERMINAL_STATUSES,
    ExecutionContext,
    InstanceStatus,
    LoopPredicate,
    LoopState,
    PhaseExecutionRecord,
    VersionLock,
    WorkflowInstance,
)
from .results import (
    CategoryCheck,
    DependencyReport,
    GateDecision,
    ImportRecord,
    ImportResult,
    InstallCounts,
    InvocationResult,
)

__all__ = [
    # IDs
    "DefinitionId",
    "InstanceId",
    "SessionId",
    "generate_event_id",
    "generate_instance_id",
    "generate_session_id",
    "utcnow",
    # Definitions
    "PhaseType",
    "Position",
    "WorkflowDefinition",
    "WorkflowDependencies",
    "WorkflowPhase",
    "parse_phase_type",
    # Events
    "EventKind",
    "PhaseEvent",
    # Instances
    "TERMINAL_STATUSES",
    "ExecutionContext",
    "InstanceStatus",
    "LoopPredicate",
    "LoopState",
    "PhaseExecutionRecord",
    "VersionLock",
    "WorkflowInstance",
    # Results
    "CategoryCheck",
    "DependencyReport",
    "GateDecision",
    "ImportRecord",
    "ImportResult",
    "InstallCounts",
    "InvocationResult",
]
