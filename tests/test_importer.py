"""
Tests for the workflow package importer and dependency resolver.

Verifies:
1. Bundled skills/agents missing locally are installed and counted
2. Re-importing an unchanged package keeps one definition row and adds an
   audit entry
3. Missing required dependencies abort the import before anything is written
4. A version held by a running instance cannot be overwritten
5. Manifest failures come back as results, never as exceptions
"""

from phaseflow.runtime.dependency_resolver import DependencyResolver, capability_file
from phaseflow.runtime.importer import WorkflowImporter, list_bundled
from phaseflow.runtime.types import WorkflowDependencies

from conftest import manifest, phase, store_definition, write_package


def _three_phase_package(root):
    """planning -> gate -> writing, with the writing skill bundled."""
    data = manifest(
        "novel-pipeline",
        [
            phase(0, "planning", skill="outline"),
            phase(1, "gate", gateCondition="approved_outline"),
            phase(2, "writing", skill="chapter-writer"),
        ],
        dependencies={"agents": ["writer-agent"], "skills": ["outline", "chapter-writer"]},
    )
    return write_package(
        root,
        data,
        agents={"writer-agent": "# Writer\n"},
        skills={"chapter-writer": "# Chapter writer\n"},
    )


# =============================================================================
# Dependency resolver
# =============================================================================


class TestDependencyResolver:
    """Tests for DependencyResolver.check()."""

    def test_partitions_each_category(self, store, capability_dirs):
        capability_file(capability_dirs["agents"], "planner").write_text("x", encoding="utf-8")
        capability_file(capability_dirs["skills"], "outline").write_text("x", encoding="utf-8")
        store_definition(store, manifest("chapter", [phase(0, skill="outline")]))
        resolver = DependencyResolver(
            capability_dirs["agents"],
            capability_dirs["skills"],
            store=store,
            external_tools=["workflow-manager"],
        )

        report = resolver.check(
            WorkflowDependencies(
                agents={"planner", "editor"},
                skills={"outline"},
                external_tools={"workflow-manager", "search"},
                sub_workflows={"chapter", "ghost"},
            )
        )
        assert report.agents.to_dict() == {"installed": ["planner"], "missing": ["editor"]}
        assert report.skills.missing == []
        assert report.external_tools.missing == ["search"]
        assert report.sub_workflows.to_dict() == {"installed": ["chapter"], "missing": ["ghost"]}
        assert report.all_installed is False

    def test_check_is_repeatable(self, resolver):
        deps = WorkflowDependencies(agents={"a"}, skills={"b"})
        assert resolver.check(deps).to_dict() == resolver.check(deps).to_dict()

    def test_tool_registry_and_health_check(self, capability_dirs):
        checked = []

        def check(name):
            checked.append(name)
            return name != "flaky"

        resolver = DependencyResolver(
            capability_dirs["agents"], capability_dirs["skills"], tool_check=check
        )
        assert resolver.has_tool("search") is False
        resolver.register_tool("search")
        resolver.register_tool("flaky")
        assert resolver.has_tool("search") is True
        assert resolver.has_tool("flaky") is False
        assert checked == ["search", "flaky"]
        resolver.unregister_tool("search")
        assert resolver.registered_tools == ["flaky"]

    def test_failing_health_check_counts_as_missing(self, capability_dirs):
        def check(name):
            raise OSError("socket closed")

        resolver = DependencyResolver(
            capability_dirs["agents"],
            capability_dirs["skills"],
            external_tools=["search"],
            tool_check=check,
        )
        assert resolver.has_tool("search") is False

    def test_installed_listing(self, resolver, capability_dirs):
        capability_file(capability_dirs["skills"], "b").write_text("x", encoding="utf-8")
        capability_file(capability_dirs["skills"], "a").write_text("x", encoding="utf-8")
        (capability_dirs["skills"] / "notes.txt").write_text("x", encoding="utf-8")
        assert resolver.installed_skills() == ["a", "b"]
        assert resolver.installed_agents() == []


# =============================================================================
# Import pipeline
# =============================================================================


class TestImportPackage:
    """Tests for WorkflowImporter.import_package()."""

    def test_installs_bundled_skill(self, importer, resolver, capability_dirs, tmp_path):
        capability_file(capability_dirs["skills"], "outline").write_text("x", encoding="utf-8")
        pkg = _three_phase_package(tmp_path / "novel-pipeline")

        result = importer.import_package(pkg)

        assert result.success, result.message
        assert result.definition_id == "novel-pipeline"
        assert result.installed_counts.skills == 1
        assert result.installed_counts.agents == 1
        assert result.missing_dependencies["skills"] == []
        assert capability_file(capability_dirs["skills"], "chapter-writer").is_file()

        definition = importer.store.get_definition("novel-pipeline")
        report = importer.check_dependencies(definition)
        assert report.skills.missing == []
        assert report.all_installed

    def test_missing_unbundled_skill_is_not_fatal(self, importer, tmp_path):
        pkg = _three_phase_package(tmp_path / "novel-pipeline")

        result = importer.import_package(pkg)

        assert result.success
        assert result.installed_counts.skills == 1
        assert result.missing_dependencies["skills"] == ["outline"]

    def test_reimport_is_idempotent(self, importer, store, tmp_path):
        pkg = _three_phase_package(tmp_path / "novel-pipeline")

        first = importer.import_package(pkg)
        before = store.get_definition("novel-pipeline")
        second = importer.import_package(pkg)
        after = store.get_definition("novel-pipeline")

        assert first.message == "Imported workflow Novel Pipeline v1.0.0"
        assert second.message == "Re-imported workflow Novel Pipeline v1.0.0"
        assert second.installed_counts.skills == 0
        assert len(store.get_definitions(latest_only=False)) == 1
        assert after.to_dict()["phases"] == before.to_dict()["phases"]
        assert after.dependencies == before.dependencies
        imports = store.list_imports("novel-pipeline")
        assert len(imports) == 2
        assert imports[0].installation_log["installed"] == {"agents": 1, "skills": 1}
        assert imports[1].installation_log["installed"] == {"agents": 0, "skills": 0}

    def test_missing_required_dependency_writes_nothing(self, importer, store, capability_dirs, tmp_path):
        data = manifest(
            "needs-tools",
            [phase(0, skill="outline")],
            dependencies={
                "skills": ["outline"],
                "externalTools": ["workflow-manager", "search-index"],
                "subWorkflows": ["chapter"],
            },
        )
        pkg = write_package(tmp_path / "needs-tools", data, skills={"outline": "# Outline\n"})

        result = importer.import_package(pkg)

        assert result.success is False
        assert result.error_kind == "RequiredDependencyMissing"
        assert result.missing_required_deps == {
            "externalTools": ["search-index"],
            "subWorkflows": ["chapter"],
        }
        assert store.get_definition("needs-tools") is None
        assert store.list_imports() == []
        assert not capability_file(capability_dirs["skills"], "outline").exists()

    def test_subworkflow_dependency_satisfied_by_store(self, importer, store, tmp_path):
        store_definition(store, manifest("chapter", [phase(0, skill="draft")]))
        data = manifest(
            "book",
            [phase(0, "subworkflow", subWorkflowId="chapter")],
            dependencies={"subWorkflows": ["chapter"]},
        )
        result = importer.import_package(write_package(tmp_path / "book", data))
        assert result.success, result.message

    def test_locked_version_rejected(self, importer, store, tmp_path):
        pkg = _three_phase_package(tmp_path / "novel-pipeline")
        assert importer.import_package(pkg).success
        store.lock_version("novel-pipeline", "1.0.0", "wfi-running")

        result = importer.import_package(pkg)

        assert result.success is False
        assert result.error_kind == "DefinitionVersionLocked"
        assert len(store.list_imports("novel-pipeline")) == 1

    def test_locked_version_allowed_when_configured(self, store, resolver, tmp_path):
        importer = WorkflowImporter(store, resolver, reject_locked_reimport=False)
        pkg = _three_phase_package(tmp_path / "novel-pipeline")
        importer.import_package(pkg)
        store.lock_version("novel-pipeline", "1.0.0", "wfi-running")

        assert importer.import_package(pkg).success

    def test_new_version_allowed_while_old_locked(self, importer, store, tmp_path):
        pkg = _three_phase_package(tmp_path / "v1")
        importer.import_package(pkg)
        store.lock_version("novel-pipeline", "1.0.0", "wfi-running")

        data = manifest("novel-pipeline", [phase(0, skill="outline")], version="1.1.0")
        result = importer.import_package(write_package(tmp_path / "v2", data))

        assert result.success
        assert store.get_definition("novel-pipeline").version == "1.1.0"


class TestImportFailures:
    """Manifest problems are reported through ImportResult."""

    def test_missing_manifest(self, importer, tmp_path):
        (tmp_path / "empty").mkdir()
        result = importer.import_package(tmp_path / "empty")
        assert result.success is False
        assert result.error_kind == "ManifestNotFound"
        assert result.message.startswith("Import failed:")

    def test_ambiguous_manifest(self, importer, tmp_path):
        pkg = _three_phase_package(tmp_path / "pkg")
        (pkg / "workflow.json").write_text("{}", encoding="utf-8")
        assert importer.import_package(pkg).error_kind == "ManifestAmbiguous"

    def test_invalid_manifest(self, importer, store, tmp_path):
        pkg = write_package(tmp_path / "pkg", {"id": "bad", "name": "Bad", "phases": []})
        result = importer.import_package(pkg)
        assert result.error_kind == "ManifestInvalid"
        assert store.get_definitions() == []


class TestListBundled:
    """Tests for list_bundled()."""

    def test_lists_package_files(self, tmp_path):
        pkg = _three_phase_package(tmp_path / "pkg")
        assert list_bundled(pkg) == {"agents": ["writer-agent"], "skills": ["chapter-writer"]}

    def test_package_without_bundles(self, tmp_path):
        pkg = write_package(tmp_path / "pkg", manifest("x", [phase(0, skill="s")]))
        assert list_bundled(pkg) == {"agents": [], "skills": []}
