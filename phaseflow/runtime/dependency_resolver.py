"""
dependency_resolver.py - Report which declared capabilities are available locally.

Agents and skills are capability files (``<name>.md``) in the local agents
and skills directories. External tools are live when registered with the
resolver (from config or at runtime) and, if a health check is configured,
the check confirms them. Sub-workflows are available when the Definition
Store holds at least one version of the referenced id.

The resolver has no side effects: calling check() repeatedly with no change
to local state returns the same report.

Usage:
    from phaseflow.runtime.dependency_resolver import DependencyResolver

    resolver = DependencyResolver(agents_dir, skills_dir, store=store)
    report = resolver.check(definition.dependencies)
    if not report.all_installed:
        print(report.missing_dict())
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from .store import DefinitionStore
from .types import CategoryCheck, DependencyReport, WorkflowDependencies

logger = logging.getLogger(__name__)

CAPABILITY_SUFFIX = ".md"

ToolHealthCheck = Callable[[str], bool]


def capability_file(directory: Path, name: str) -> Path:
    """Path of the capability file for ``name`` within ``directory``."""
    return directory / f"{name}{CAPABILITY_SUFFIX}"


def list_capability_files(directory: Path) -> List[str]:
    """Names of all capability files in a directory (sorted, no suffix)."""
    if not directory.is_dir():
        return []
    return sorted(
        p.stem for p in directory.iterdir() if p.is_file() and p.suffix == CAPABILITY_SUFFIX
    )


def _partition(names: Iterable[str], present: Callable[[str], bool]) -> CategoryCheck:
    result = CategoryCheck()
    for name in sorted(set(names)):
        if present(name):
            result.installed.append(name)
        else:
            result.missing.append(name)
    return result


class DependencyResolver:
    """Checks declared dependencies against local state.

    Attributes:
        agents_dir: Directory holding installed agent files.
        skills_dir: Directory holding installed skill files.
        store: Definition Store used for sub-workflow existence checks.
    """

    def __init__(
        self,
        agents_dir: Path,
        skills_dir: Path,
        store: Optional[DefinitionStore] = None,
        external_tools: Optional[Iterable[str]] = None,
        tool_check: Optional[ToolHealthCheck] = None,
    ):
        self.agents_dir = Path(agents_dir)
        self.skills_dir = Path(skills_dir)
        self.store = store
        self._tools: Set[str] = set(external_tools or [])
        self._tool_check = tool_check

    # =========================================================================
    # External tool registry
    # =========================================================================

    def register_tool(self, name: str) -> None:
        """Mark an external tool as live."""
        self._tools.add(name)

    def unregister_tool(self, name: str) -> None:
        self._tools.discard(name)

    @property
    def registered_tools(self) -> List[str]:
        return sorted(self._tools)

    # =========================================================================
    # Presence checks
    # =========================================================================

    def has_agent(self, name: str) -> bool:
        return capability_file(self.agents_dir, name).is_file()

    def has_skill(self, name: str) -> bool:
        return capability_file(self.skills_dir, name).is_file()

    def has_tool(self, name: str) -> bool:
        if name not in self._tools:
            return False
        if self._tool_check is None:
            return True
        try:
            return bool(self._tool_check(name))
        except Exception as e:
            logger.warning("External tool health check failed for %s: %s", name, e)
            return False

    def check(self, dependencies: WorkflowDependencies) -> DependencyReport:
        """Partition every declared dependency into installed and missing."""
        if dependencies.sub_workflows and self.store is not None:
            known = self.store.existing_definition_ids(dependencies.sub_workflows)
        else:
            known = set()

        report = DependencyReport(
            agents=_partition(dependencies.agents, self.has_agent),
            skills=_partition(dependencies.skills, self.has_skill),
            external_tools=_partition(dependencies.external_tools, self.has_tool),
            sub_workflows=_partition(dependencies.sub_workflows, known.__contains__),
        )
        logger.debug("Dependency check: %s", report.to_dict())
        return report

    # =========================================================================
    # Installed capability listing
    # =========================================================================

    def installed_agents(self) -> List[str]:
        return list_capability_files(self.agents_dir)

    def installed_skills(self) -> List[str]:
        return list_capability_files(self.skills_dir)
