"""Definition types: workflow definitions, phases and declared dependencies.

A WorkflowDefinition is identified by (id, version). Phases are embedded
and addressed by their position (phase index) within the definition.

Dict forms use the manifest's camelCase keys so that a definition can be
written back out as a manifest and stored as JSON without translation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ._ids import DefinitionId
from ._time import _datetime_to_iso, _iso_to_datetime


class PhaseType(str, Enum):
    """Kind of work a phase performs. Dispatch in the engine is exhaustive."""

    PLANNING = "planning"
    WRITING = "writing"
    GATE = "gate"
    USER = "user"
    SUBWORKFLOW = "subworkflow"
    LOOP = "loop"


# Legacy spellings accepted in manifests
PHASE_TYPE_ALIASES: Dict[str, PhaseType] = {
    "user-input": PhaseType.USER,
    "approval": PhaseType.USER,
    "sub-workflow": PhaseType.SUBWORKFLOW,
}


def parse_phase_type(value: Any) -> PhaseType:
    """Parse a manifest phase type string.

    Raises:
        ValueError: If the value names no known phase type.
    """
    if isinstance(value, PhaseType):
        return value
    text = str(value or "").strip().lower()
    if text in PHASE_TYPE_ALIASES:
        return PHASE_TYPE_ALIASES[text]
    return PhaseType(text)


@dataclass
class Position:
    """Canvas position of a phase (presentation only)."""

    x: float = 0
    y: float = 0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Position":
        if not data:
            return cls()
        return cls(x=data.get("x", 0), y=data.get("y", 0))


@dataclass
class WorkflowPhase:
    """One step of a workflow definition.

    Attributes:
        index: Position of the phase within its enclosing phase list.
        id: Manifest identifier of the phase (int or string).
        name: Display name.
        type: Phase kind.
        agent: Agent that owns the phase.
        skill: Capability invoked for planning/writing phases.
        sub_workflow_id: Referenced definition id (subworkflow phases only).
        description: Free-text description used to build the instruction.
        gate: Whether this phase is a quality gate.
        gate_condition: Condition handed to the gate validator.
        requires_approval: Whether a user phase suspends for approval.
        position: Canvas position.
        loop_phases: Inner phase sequence for loop phases.
        max_iterations: Iteration bound for loop phases.
    """

    index: int
    id: Any
    name: str
    type: PhaseType
    agent: str
    skill: Optional[str] = None
    sub_workflow_id: Optional[str] = None
    description: str = ""
    gate: bool = False
    gate_condition: Optional[str] = None
    requires_approval: bool = False
    position: Position = field(default_factory=Position)
    loop_phases: List["WorkflowPhase"] = field(default_factory=list)
    max_iterations: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "agent": self.agent,
            "description": self.description,
            "gate": self.gate,
            "requiresApproval": self.requires_approval,
            "position": self.position.to_dict(),
        }
        if self.skill:
            data["skill"] = self.skill
        if self.sub_workflow_id:
            data["subWorkflowId"] = self.sub_workflow_id
        if self.gate_condition:
            data["gateCondition"] = self.gate_condition
        if self.loop_phases:
            data["loopPhases"] = [p.to_dict() for p in self.loop_phases]
        if self.max_iterations is not None:
            data["maxIterations"] = self.max_iterations
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int) -> "WorkflowPhase":
        """Build a phase from its manifest dict. Does not validate."""
        phase_type = parse_phase_type(data.get("type") or "planning")
        max_iterations = data.get("maxIterations")
        return cls(
            index=index,
            id=data.get("id", index),
            name=data.get("name") or f"Phase {index}",
            type=phase_type,
            agent=data.get("agent") or "",
            skill=data.get("skill") or None,
            sub_workflow_id=data.get("subWorkflowId") or None,
            description=data.get("description") or "",
            gate=bool(data.get("gate", phase_type == PhaseType.GATE)),
            gate_condition=data.get("gateCondition") or None,
            requires_approval=bool(data.get("requiresApproval", False)),
            position=Position.from_dict(data.get("position")),
            loop_phases=[
                cls.from_dict(inner, i) for i, inner in enumerate(data.get("loopPhases") or [])
            ],
            max_iterations=int(max_iterations) if max_iterations is not None else None,
        )


@dataclass
class WorkflowDependencies:
    """Capabilities a definition declares it needs."""

    agents: Set[str] = field(default_factory=set)
    skills: Set[str] = field(default_factory=set)
    external_tools: Set[str] = field(default_factory=set)
    sub_workflows: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "agents": sorted(self.agents),
            "skills": sorted(self.skills),
            "externalTools": sorted(self.external_tools),
            "subWorkflows": sorted(self.sub_workflows),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowDependencies":
        data = data or {}
        # "mcpServers" is the legacy name for external tools
        tools = data.get("externalTools")
        if tools is None:
            tools = data.get("mcpServers")
        return cls(
            agents=set(data.get("agents") or []),
            skills=set(data.get("skills") or []),
            external_tools=set(tools or []),
            sub_workflows=set(data.get("subWorkflows") or []),
        )


@dataclass
class WorkflowDefinition:
    """A versioned, named, ordered set of phases plus declared dependencies.

    Owned by the DefinitionStore; created and updated only by the Importer.
    """

    id: DefinitionId
    version: str
    name: str
    description: str = ""
    graph: Dict[str, Any] = field(default_factory=dict)
    dependencies: WorkflowDependencies = field(default_factory=WorkflowDependencies)
    phases: List[WorkflowPhase] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_system: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.id}@{self.version}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "graph": self.graph,
            "dependencies": self.dependencies.to_dict(),
            "phases": [p.to_dict() for p in self.phases],
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "isSystem": self.is_system,
            "createdBy": self.created_by,
            "createdAt": _datetime_to_iso(self.created_at),
            "updatedAt": _datetime_to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls(
            id=data["id"],
            version=str(data["version"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            graph=data.get("graph") or {},
            dependencies=WorkflowDependencies.from_dict(data.get("dependencies")),
            phases=[WorkflowPhase.from_dict(p, i) for i, p in enumerate(data.get("phases") or [])],
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {}),
            is_system=bool(data.get("isSystem", False)),
            created_by=data.get("createdBy"),
            created_at=_iso_to_datetime(data.get("createdAt")),
            updated_at=_iso_to_datetime(data.get("updatedAt")),
        )
