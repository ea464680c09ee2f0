"""Result types returned across component boundaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ._ids import DefinitionId, SessionId
from ._time import _datetime_to_iso


@dataclass
class CategoryCheck:
    """Installed/missing partition for one dependency category."""

    installed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"installed": list(self.installed), "missing": list(self.missing)}


@dataclass
class DependencyReport:
    """Outcome of a dependency check across all categories."""

    agents: CategoryCheck = field(default_factory=CategoryCheck)
    skills: CategoryCheck = field(default_factory=CategoryCheck)
    external_tools: CategoryCheck = field(default_factory=CategoryCheck)
    sub_workflows: CategoryCheck = field(default_factory=CategoryCheck)

    @property
    def all_installed(self) -> bool:
        return not (
            self.agents.missing
            or self.skills.missing
            or self.external_tools.missing
            or self.sub_workflows.missing
        )

    def missing_dict(self) -> Dict[str, List[str]]:
        return {
            "agents": list(self.agents.missing),
            "skills": list(self.skills.missing),
            "externalTools": list(self.external_tools.missing),
            "subWorkflows": list(self.sub_workflows.missing),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agents": self.agents.to_dict(),
            "skills": self.skills.to_dict(),
            "externalTools": self.external_tools.to_dict(),
            "subWorkflows": self.sub_workflows.to_dict(),
        }


@dataclass
class InstallCounts:
    """How many bundled capability files an import copied into place."""

    agents: int = 0
    skills: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"agents": self.agents, "skills": self.skills}


@dataclass
class ImportResult:
    """Outcome of importing a workflow package.

    ``missing_required_deps`` is set when the import was refused because a
    required dependency (external tool or sub-workflow) is absent.
    ``missing_dependencies`` lists everything still missing after installs.
    """

    success: bool
    message: str
    definition_id: Optional[DefinitionId] = None
    version: Optional[str] = None
    installed_counts: InstallCounts = field(default_factory=InstallCounts)
    missing_required_deps: Optional[Dict[str, List[str]]] = None
    missing_dependencies: Optional[Dict[str, List[str]]] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "definitionId": self.definition_id,
            "version": self.version,
            "installedCounts": self.installed_counts.to_dict(),
            "missingRequiredDeps": self.missing_required_deps,
            "missingDependencies": self.missing_dependencies,
            "errorKind": self.error_kind,
        }


@dataclass
class ImportRecord:
    """Audit entry written for every successful import."""

    id: int
    definition_id: DefinitionId
    version: str
    source_type: str
    source_path: str
    installation_log: Dict[str, Any]
    imported_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "definitionId": self.definition_id,
            "version": self.version,
            "sourceType": self.source_type,
            "sourcePath": self.source_path,
            "installationLog": self.installation_log,
            "importedAt": _datetime_to_iso(self.imported_at),
        }


@dataclass
class InvocationResult:
    """Outcome of one capability invocation.

    Attributes:
        success: True when the process exited 0 and produced structured output.
        session_id: Session that ran the invocation.
        output: Parsed structured output (success only).
        error: Human-readable failure description.
        error_kind: "process" when the process could not run to completion
            (spawn failure, timeout, killed), "output" for a non-zero exit or
            unparseable output, "aborted" when abort() ended the session.
        exit_code: Process exit code, if the process ran.
    """

    success: bool
    session_id: SessionId
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def aborted(self) -> bool:
        return self.error_kind == "aborted"


@dataclass
class GateDecision:
    """Verdict of a gate validator.

    ``redirect_to`` lets a failed (or passed) gate move execution forward to
    a later phase index instead of halting the instance.
    """

    passed: bool
    reason: str = ""
    redirect_to: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
