"""Error taxonomy for import and execution.

Every error carries a stable ``kind`` string so results, instance rows and
API responses can report the failure category without exposing classes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for all phaseflow errors."""

    kind = "WorkflowError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {"kind": self.kind, "message": self.message, "details": self.details}


class DefinitionNotFound(WorkflowError):
    """No definition matches the requested (id, version)."""

    kind = "DefinitionNotFound"

    def __init__(self, definition_id: str, version: Optional[str] = None):
        label = f"{definition_id}@{version}" if version else definition_id
        super().__init__(
            f"Workflow definition not found: {label}",
            {"definitionId": definition_id, "version": version},
        )
        self.definition_id = definition_id
        self.version = version


# =============================================================================
# Import errors
# =============================================================================


class WorkflowImportError(WorkflowError):
    """Base class for failures while importing a workflow package."""

    kind = "ImportError"


class ManifestNotFound(WorkflowImportError):
    kind = "ManifestNotFound"


class ManifestAmbiguous(WorkflowImportError):
    kind = "ManifestAmbiguous"


class ManifestInvalid(WorkflowImportError):
    """The manifest failed to parse or failed structural validation."""

    kind = "ManifestInvalid"

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        problems = problems or []
        super().__init__(message, {"problems": problems})
        self.problems = problems


class RequiredDependencyMissing(WorkflowImportError):
    """A hard dependency (external tool or sub-workflow) is not available."""

    kind = "RequiredDependencyMissing"

    def __init__(self, missing: Dict[str, List[str]]):
        parts = [f"{category}: {', '.join(names)}" for category, names in missing.items() if names]
        super().__init__(
            "Required dependencies missing (" + "; ".join(parts) + ")",
            {"missing": missing},
        )
        self.missing = missing


class DefinitionVersionLocked(WorkflowImportError):
    """Re-import refused because running instances hold the version."""

    kind = "DefinitionVersionLocked"

    def __init__(self, definition_id: str, version: str, instance_ids: List[str]):
        super().__init__(
            f"Workflow {definition_id}@{version} is locked by "
            f"{len(instance_ids)} running instance(s); bump the version to re-import",
            {"definitionId": definition_id, "version": version, "instanceIds": instance_ids},
        )
        self.instance_ids = instance_ids


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionError(WorkflowError):
    """Base class for phase failures. Any of these fails the instance."""

    kind = "ExecutionError"

    def __init__(
        self,
        message: str,
        phase_index: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if phase_index is not None:
            details.setdefault("phaseIndex", phase_index)
        super().__init__(message, details)
        self.phase_index = phase_index


class PhaseInvocationFailed(ExecutionError):
    kind = "PhaseInvocationFailed"


class GateRejected(ExecutionError):
    kind = "GateRejected"


class SubWorkflowFailed(ExecutionError):
    kind = "SubWorkflowFailed"


class CapabilityProcessError(ExecutionError):
    kind = "CapabilityProcessError"


class WorkflowCancelled(Exception):
    """Raised inside the phase loop when the instance's stop flag is set.

    Not an error: the engine turns it into the CANCELLED terminal status.
    """
