# phaseflow/runtime package
# Workflow definitions, import, version locking and phased execution.
#
# Core components:
#   - types: Core dataclasses (WorkflowDefinition, WorkflowInstance, PhaseEvent, ...)
#   - store: DuckDB-backed definition/instance store
#   - importer: Package import pipeline (manifest, dependencies, installs)
#   - engine: Phase state machine driving instances
#   - service: WorkflowService wiring everything from runtime settings
#
# Usage:
#     from phaseflow.runtime import WorkflowService
#     service = WorkflowService.get_instance()
#     result = service.import_package(path)
#     instance_id = await service.start(result.definition_id)

from typing import TYPE_CHECKING

from .errors import (
    DefinitionNotFound,
    ExecutionError,
    WorkflowError,
    WorkflowImportError,
)
from .types import (
    EventKind,
    ExecutionContext,
    InstanceStatus,
    PhaseType,
    WorkflowDefinition,
    WorkflowInstance,
)

# TYPE_CHECKING stubs for static type checkers; the service is imported
# lazily at runtime to avoid importing the config layer with the types
if TYPE_CHECKING:
    from .service import WorkflowService as WorkflowService
    from .service import get_workflow_service as get_workflow_service

__all__ = [
    # Errors
    "DefinitionNotFound",
    "ExecutionError",
    "WorkflowError",
    "WorkflowImportError",
    # Types
    "EventKind",
    "ExecutionContext",
    "InstanceStatus",
    "PhaseType",
    "WorkflowDefinition",
    "WorkflowInstance",
    # Service (imported lazily at runtime, statically available for type checking)
    "WorkflowService",
    "get_workflow_service",
]


def __getattr__(name: str):
    """Lazy import for service to avoid circular dependencies."""
    if name == "WorkflowService":
        from .service import WorkflowService

        return WorkflowService
    if name == "get_workflow_service":
        from .service import get_workflow_service

        return get_workflow_service
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
