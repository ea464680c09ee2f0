"""
importer.py - Import workflow packages into the Definition Store.

Pipeline:
    1. Locate exactly one manifest in the package folder
    2. Parse and validate it into a WorkflowDefinition
    3. Check declared dependencies
    4. Refuse the import if a required dependency (external tool or
       sub-workflow) is missing, or if the version is locked by a running
       instance; nothing has been written at this point
    5. Copy bundled agents/skills that are missing locally
    6. Upsert the definition keyed by (id, version)
    7. Append an import audit entry

Missing agents and skills with no bundled file are reported in the result
but do not fail the import. Files installed before a later step fails are
left in place.

Usage:
    from phaseflow.runtime.importer import WorkflowImporter

    importer = WorkflowImporter(store, resolver, locks)
    result = importer.import_package(Path("packages/novel-pipeline"))
    if not result.success:
        print(result.error_kind, result.message)
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from .dependency_resolver import DependencyResolver, capability_file, list_capability_files
from .errors import DefinitionVersionLocked, RequiredDependencyMissing, WorkflowImportError
from .manifest import find_manifest, load_definition
from .store import DefinitionStore
from .types import DependencyReport, ImportResult, InstallCounts, WorkflowDefinition, utcnow
from .types._time import _datetime_to_iso
from .version_locks import VersionLockManager

logger = logging.getLogger(__name__)

BUNDLED_AGENTS_DIR = "agents"
BUNDLED_SKILLS_DIR = "skills"


def list_bundled(package_dir: Path) -> Dict[str, List[str]]:
    """Agents and skills shipped inside a package folder."""
    package_dir = Path(package_dir)
    return {
        "agents": list_capability_files(package_dir / BUNDLED_AGENTS_DIR),
        "skills": list_capability_files(package_dir / BUNDLED_SKILLS_DIR),
    }


class WorkflowImporter:
    """Reads workflow packages and registers them in the Definition Store.

    Attributes:
        store: Definition Store receiving definitions and audit entries.
        resolver: Dependency Resolver (also supplies the install directories).
        locks: Version Lock Manager consulted before overwriting a version.
        reject_locked_reimport: Refuse to overwrite a version held by
            running instances.
    """

    def __init__(
        self,
        store: DefinitionStore,
        resolver: DependencyResolver,
        locks: Optional[VersionLockManager] = None,
        reject_locked_reimport: bool = True,
    ):
        self.store = store
        self.resolver = resolver
        self.locks = locks or VersionLockManager(store)
        self.reject_locked_reimport = reject_locked_reimport

    def import_package(self, package_path: Path) -> ImportResult:
        """Import a workflow package folder. Never raises."""
        package_path = Path(package_path)
        logger.info("Starting workflow import from %s", package_path)

        try:
            manifest_path = find_manifest(package_path)
            definition = load_definition(manifest_path)
            logger.info(
                "Parsed workflow %s v%s (%d phases)",
                definition.name,
                definition.version,
                len(definition.phases),
            )

            report = self.resolver.check(definition.dependencies)
            self._require_hard_dependencies(report)
            self._require_unlocked(definition)

            counts = self._install_bundled(package_path, report)
            stored, created = self.store.upsert_definition(definition)
        except WorkflowImportError as e:
            logger.warning("Import of %s failed (%s): %s", package_path, e.kind, e.message)
            return ImportResult(
                success=False,
                message=f"Import failed: {e.message}",
                missing_required_deps=e.missing if isinstance(e, RequiredDependencyMissing) else None,
                error_kind=e.kind,
            )
        except Exception as e:
            logger.exception("Import of %s failed", package_path)
            return ImportResult(
                success=False,
                message=f"Import failed: {e}",
                error_kind=WorkflowImportError.kind,
            )

        self._record_audit(stored, package_path, counts)

        remaining = self.resolver.check(stored.dependencies)
        missing = remaining.missing_dict()
        for category, names in missing.items():
            if names:
                logger.warning(
                    "Workflow %s imported with missing %s: %s",
                    stored.key,
                    category,
                    ", ".join(names),
                )

        verb = "Imported" if created else "Re-imported"
        logger.info(
            "%s workflow %s (installed %d agents, %d skills)",
            verb,
            stored.key,
            counts.agents,
            counts.skills,
        )
        return ImportResult(
            success=True,
            message=f"{verb} workflow {stored.name} v{stored.version}",
            definition_id=stored.id,
            version=stored.version,
            installed_counts=counts,
            missing_dependencies=missing,
        )

    def check_dependencies(self, definition: WorkflowDefinition) -> DependencyReport:
        return self.resolver.check(definition.dependencies)

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    def _require_hard_dependencies(self, report: DependencyReport) -> None:
        missing = {
            "externalTools": list(report.external_tools.missing),
            "subWorkflows": list(report.sub_workflows.missing),
        }
        if any(missing.values()):
            raise RequiredDependencyMissing(missing)

    def _require_unlocked(self, definition: WorkflowDefinition) -> None:
        if not self.reject_locked_reimport:
            return
        holders = self.locks.holders(definition.id, definition.version)
        if holders:
            raise DefinitionVersionLocked(definition.id, definition.version, holders)

    def _install_bundled(self, package_path: Path, report: DependencyReport) -> InstallCounts:
        """Copy bundled files for missing agents and skills into place."""
        counts = InstallCounts()
        plan = (
            ("agents", report.agents.missing, BUNDLED_AGENTS_DIR, self.resolver.agents_dir),
            ("skills", report.skills.missing, BUNDLED_SKILLS_DIR, self.resolver.skills_dir),
        )
        for category, missing, bundled_subdir, target_dir in plan:
            for name in missing:
                source = capability_file(package_path / bundled_subdir, name)
                if not source.is_file():
                    logger.warning("No bundled file for missing %s %r", category[:-1], name)
                    continue
                target_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, capability_file(target_dir, name))
                setattr(counts, category, getattr(counts, category) + 1)
                logger.debug("Installed %s %s from %s", category[:-1], name, source)
        return counts

    def _record_audit(
        self, definition: WorkflowDefinition, package_path: Path, counts: InstallCounts
    ) -> None:
        log: Dict[str, Any] = {
            "timestamp": _datetime_to_iso(utcnow()),
            "installed": counts.to_dict(),
        }
        try:
            self.store.record_import(
                definition.id,
                definition.version,
                source_path=str(package_path.resolve()),
                installation_log=log,
            )
        except Exception as e:
            # The definition is already stored; a lost audit row is not fatal
            logger.warning("Failed to record import audit for %s: %s", definition.key, e)
