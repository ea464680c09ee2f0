"""
service.py - WorkflowService wiring

Builds the store, resolver, importer, lock manager, invoker, event bus and
engine from RuntimeSettings and exposes them through one object. The CLI
and the API use this service rather than constructing components directly.

Usage:
    from phaseflow.runtime.service import WorkflowService, get_workflow_service

    service = get_workflow_service()
    result = service.import_package(Path("packages/novel-pipeline"))
    instance_id = await service.start(result.definition_id)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..config.runtime_config import RuntimeSettings, load_settings
from .dependency_resolver import DependencyResolver
from .engine import ExecutionEngine
from .errors import DefinitionNotFound
from .events import EventBus
from .gates import GateValidator
from .importer import WorkflowImporter, list_bundled
from .invoker import CapabilityInvoker
from .manifest import dump_manifest
from .store import DefinitionStore
from .types import (
    DependencyReport,
    ExecutionContext,
    ImportResult,
    InstanceId,
    PhaseExecutionRecord,
    WorkflowDefinition,
    WorkflowInstance,
)
from .version_locks import VersionLockManager

logger = logging.getLogger(__name__)


class WorkflowService:
    """Entry point for importing and running workflows.

    This is a singleton in normal use (see get_instance); tests construct
    their own with explicit settings.
    """

    _instance: Optional["WorkflowService"] = None

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        gate_validator: Optional[GateValidator] = None,
    ):
        self.settings = settings or load_settings()
        s = self.settings

        self.store = DefinitionStore(s.db_path)
        self.locks = VersionLockManager(self.store)
        self.resolver = DependencyResolver(
            s.agents_dir, s.skills_dir, store=self.store, external_tools=s.external_tools
        )
        self.importer = WorkflowImporter(
            self.store,
            self.resolver,
            self.locks,
            reject_locked_reimport=s.reject_locked_reimport,
        )
        self.invoker = CapabilityInvoker(
            s.invoker_command,
            timeout_seconds=s.timeout_seconds,
            max_processes=s.max_processes,
            session_retention=s.session_retention,
        )
        self.events = EventBus()
        self.engine = ExecutionEngine(
            self.store,
            self.invoker,
            self.events,
            locks=self.locks,
            gate_validator=gate_validator,
            strict_skills=s.strict_skills,
            loop_max_iterations=s.loop_max_iterations,
            event_retention_seconds=s.event_retention_seconds,
        )

        if s.db_path is not None:
            self.store.recover_interrupted_instances()

    @classmethod
    def get_instance(cls) -> "WorkflowService":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None

    def close(self) -> None:
        self.store.close()

    # =========================================================================
    # Definitions
    # =========================================================================

    def import_package(self, package_path: Path) -> ImportResult:
        return self.importer.import_package(package_path)

    def list_definitions(
        self, tag: Optional[str] = None, search: Optional[str] = None
    ) -> List[WorkflowDefinition]:
        return self.store.get_definitions(tag=tag, search=search)

    def get_definition(self, definition_id: str, version: Optional[str] = None) -> WorkflowDefinition:
        """Get a definition or raise DefinitionNotFound."""
        definition = self.store.get_definition(definition_id, version)
        if definition is None:
            raise DefinitionNotFound(definition_id, version)
        return definition

    def check_dependencies(
        self, definition_id: str, version: Optional[str] = None
    ) -> DependencyReport:
        return self.resolver.check(self.get_definition(definition_id, version).dependencies)

    def export_definition(
        self, definition_id: str, version: Optional[str] = None, fmt: str = "yaml"
    ) -> str:
        return dump_manifest(self.get_definition(definition_id, version), fmt)

    def list_capabilities(self, package_path: Optional[Path] = None) -> Dict[str, Dict[str, List[str]]]:
        """Installed agents/skills, plus those bundled in a package if given."""
        result = {
            "installed": {
                "agents": self.resolver.installed_agents(),
                "skills": self.resolver.installed_skills(),
            }
        }
        if package_path is not None:
            result["bundled"] = list_bundled(package_path)
        return result

    # =========================================================================
    # Instances
    # =========================================================================

    async def start(
        self,
        definition_id: str,
        context: Optional[ExecutionContext] = None,
        version: Optional[str] = None,
        start_phase_index: int = 0,
    ) -> InstanceId:
        return await self.engine.start(
            definition_id, context, version=version, start_phase_index=start_phase_index
        )

    def cancel(self, instance_id: InstanceId) -> bool:
        return self.engine.cancel(instance_id)

    def grant_approval(self, instance_id: InstanceId, phase_index: int) -> bool:
        return self.engine.grant_approval(instance_id, phase_index)

    def reject_approval(
        self, instance_id: InstanceId, phase_index: int, reason: Optional[str] = None
    ) -> bool:
        return self.engine.reject_approval(instance_id, phase_index, reason)

    def get_instance(self, instance_id: InstanceId) -> Optional[WorkflowInstance]:
        return self.store.get_instance(instance_id)

    def list_instances(self, definition_id: Optional[str] = None) -> List[WorkflowInstance]:
        return self.store.list_instances(definition_id=definition_id)

    def get_phase_records(self, instance_id: InstanceId) -> List[PhaseExecutionRecord]:
        return self.store.get_phase_records(instance_id)


def get_workflow_service() -> WorkflowService:
    """Get the WorkflowService singleton instance."""
    return WorkflowService.get_instance()
