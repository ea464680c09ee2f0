"""
Tests for the DuckDB-backed DefinitionStore.

Verifies:
1. Upsert keyed by (id, version) with "latest" meaning most recently imported
2. Definition queries (tag, search, latest only)
3. Import audit entries
4. Instance lifecycle columns and terminal transitions
5. At most one open phase record per instance
6. Shared version locks and transactional rollback
7. Recovery of instances left non-terminal by a previous process
"""

import pytest

from phaseflow.runtime.store import DefinitionStore
from phaseflow.runtime.types import InstanceStatus

from conftest import manifest, phase, store_definition


def _flow(definition_id="novel", version="1.0.0", **extra):
    return manifest(definition_id, [phase(0, skill="outline")], version=version, **extra)


# =============================================================================
# Definitions
# =============================================================================


class TestDefinitions:
    """Tests for definition upsert and queries."""

    def test_upsert_creates_then_overwrites(self, store):
        from phaseflow.runtime.manifest import parse_manifest

        first, created = store.upsert_definition(parse_manifest(_flow(description="v1 text")))
        assert created is True
        second, created = store.upsert_definition(parse_manifest(_flow(description="new text")))
        assert created is False
        assert second.description == "new text"
        assert second.created_at == first.created_at
        assert store.list_versions("novel") == ["1.0.0"]

    def test_latest_is_most_recent_import(self, store):
        store_definition(store, _flow(version="2.0.0"))
        store_definition(store, _flow(version="1.0.0"))
        assert store.get_definition("novel").version == "1.0.0"
        assert store.list_versions("novel") == ["1.0.0", "2.0.0"]

        store_definition(store, _flow(version="2.0.0"))
        assert store.get_definition("novel").version == "2.0.0"
        assert store.get_definition("novel", "1.0.0").version == "1.0.0"

    def test_unknown_definition(self, store):
        assert store.get_definition("missing") is None
        assert store.get_definition("novel", "9.9.9") is None

    def test_phases_survive_storage(self, store):
        data = manifest(
            "novel",
            [phase(0, skill="outline"), phase(1, "user", requiresApproval=True)],
            dependencies={"skills": ["outline"]},
        )
        stored = store_definition(store, data)
        assert stored.phases[1].requires_approval is True
        assert stored.dependencies.skills == {"outline"}

    def test_get_definitions_filters(self, store):
        store_definition(store, _flow("novel", tags=["fiction"], description="Write a novel"))
        store_definition(store, _flow("essay", tags=["nonfiction"], description="Write an essay"))
        store_definition(store, _flow("novel", version="2.0.0", tags=["fiction"]))

        assert [d.key for d in store.get_definitions()] == ["essay@1.0.0", "novel@2.0.0"]
        assert [d.id for d in store.get_definitions(tag="nonfiction")] == ["essay"]
        assert [d.id for d in store.get_definitions(search="ESSAY")] == ["essay"]
        assert len(store.get_definitions(latest_only=False)) == 3

    def test_existing_definition_ids(self, store):
        store_definition(store, _flow("novel"))
        assert store.existing_definition_ids(["novel", "ghost"]) == {"novel"}
        assert store.existing_definition_ids([]) == set()


class TestImportAudit:
    """Tests for import audit entries."""

    def test_record_and_list(self, store):
        store.record_import("novel", "1.0.0", "/pkgs/novel", {"installed": {"skills": 1}})
        store.record_import("novel", "1.0.0", "/pkgs/novel", {"installed": {"skills": 0}})
        store.record_import("essay", "1.0.0", "/pkgs/essay", {})

        records = store.list_imports("novel")
        assert len(records) == 2
        assert records[0].installation_log == {"installed": {"skills": 1}}
        assert records[0].source_type == "folder"
        assert len(store.list_imports()) == 3


# =============================================================================
# Instances and phase records
# =============================================================================


class TestInstances:
    """Tests for instance rows."""

    def test_create_is_pending(self, store):
        instance_id = store.create_instance("novel", "1.0.0", {"projectId": "p1"})
        instance = store.get_instance(instance_id)
        assert instance.status == InstanceStatus.PENDING
        assert instance.context == {"projectId": "p1"}
        assert instance.started_at is None

    def test_running_sets_started_once(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        store.update_instance(instance_id, status=InstanceStatus.RUNNING)
        started = store.get_instance(instance_id).started_at
        store.update_instance(instance_id, status=InstanceStatus.WAITING_APPROVAL, current_phase=2)
        store.update_instance(instance_id, status=InstanceStatus.RUNNING)
        instance = store.get_instance(instance_id)
        assert instance.started_at == started
        assert instance.current_phase == 2

    def test_finish_records_error(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        store.finish_instance(
            instance_id, InstanceStatus.FAILED, error="boom", error_kind="GateRejected", error_phase=1
        )
        instance = store.get_instance(instance_id)
        assert instance.status.is_terminal
        assert (instance.error, instance.error_kind, instance.error_phase) == (
            "boom",
            "GateRejected",
            1,
        )
        assert instance.completed_at is not None

    def test_finish_requires_terminal_status(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        with pytest.raises(ValueError):
            store.finish_instance(instance_id, InstanceStatus.RUNNING)

    def test_list_instances_filters(self, store):
        parent = store.create_instance("novel", "1.0.0")
        child = store.create_instance("chapter", "1.0.0", parent_instance_id=parent)
        store.finish_instance(child, InstanceStatus.COMPLETED)

        assert [i.id for i in store.list_instances(definition_id="chapter")] == [child]
        assert [i.id for i in store.list_instances(parent_instance_id=parent)] == [child]
        assert [i.id for i in store.list_instances(statuses=[InstanceStatus.PENDING])] == [parent]
        assert store.list_instances(statuses=[]) == []


class TestPhaseRecords:
    """Tests for append-only phase execution records."""

    def test_one_open_record_per_instance(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        record_id = store.append_phase_record(instance_id, 0, 0)
        with pytest.raises(RuntimeError):
            store.append_phase_record(instance_id, 1, 1)

        store.complete_phase_record(
            record_id, "completed", session_id="s1", capability_id="outline", output={"ok": True}
        )
        store.append_phase_record(instance_id, 1, "review")

        records = store.get_phase_records(instance_id)
        assert [(r.phase_index, r.phase_id, r.is_open) for r in records] == [
            (0, 0, False),
            (1, "review", True),
        ]
        assert records[0].output == {"ok": True}
        assert records[0].capability_id == "outline"

    def test_closed_record_is_not_rewritten(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        record_id = store.append_phase_record(instance_id, 0, 0)
        store.complete_phase_record(record_id, "completed", output={"first": True})
        store.complete_phase_record(record_id, "failed", error="late")

        record = store.get_phase_records(instance_id)[0]
        assert record.status == "completed"
        assert record.output == {"first": True}
        assert record.error is None


# =============================================================================
# Locks and transactions
# =============================================================================


class TestLocks:
    """Tests for version lock rows."""

    def test_locks_are_shared_and_idempotent(self, store):
        assert store.lock_version("novel", "1.0.0", "wfi-a") is True
        assert store.lock_version("novel", "1.0.0", "wfi-a") is False
        assert store.lock_version("novel", "1.0.0", "wfi-b") is True
        assert {lock.instance_id for lock in store.get_locks("novel", "1.0.0")} == {"wfi-a", "wfi-b"}

        assert store.unlock_version("novel", "1.0.0", "wfi-a") is True
        assert store.unlock_version("novel", "1.0.0", "wfi-a") is False
        assert [lock.instance_id for lock in store.get_locks(instance_id="wfi-b")] == ["wfi-b"]

    def test_transaction_rolls_back(self, store):
        instance_id = store.create_instance("novel", "1.0.0")
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.finish_instance(instance_id, InstanceStatus.COMPLETED)
                store.lock_version("novel", "1.0.0", instance_id)
                raise RuntimeError("abort")

        assert store.get_instance_status(instance_id) == InstanceStatus.PENDING
        assert store.get_locks(instance_id=instance_id) == []

    def test_nested_transaction_joins_outer(self, store):
        with store.transaction():
            with store.transaction():
                store.lock_version("novel", "1.0.0", "wfi-a")
            store.lock_version("novel", "1.0.0", "wfi-b")
        assert len(store.get_locks("novel", "1.0.0")) == 2


class TestRecovery:
    """Tests for recover_interrupted_instances()."""

    def test_interrupted_instances_fail_and_unlock(self, tmp_path):
        db_path = tmp_path / "phaseflow.duckdb"
        first = DefinitionStore(db_path)
        running = first.create_instance("novel", "1.0.0")
        first.update_instance(running, status=InstanceStatus.RUNNING, current_phase=1)
        first.lock_version("novel", "1.0.0", running)
        first.append_phase_record(running, 1, 1)
        done = first.create_instance("novel", "1.0.0")
        first.finish_instance(done, InstanceStatus.COMPLETED)
        first.close()

        second = DefinitionStore(db_path)
        try:
            assert second.recover_interrupted_instances() == [running]
            instance = second.get_instance(running)
            assert instance.status == InstanceStatus.FAILED
            assert instance.error_kind == "Interrupted"
            assert instance.error_phase == 1
            assert second.get_locks() == []
            assert not any(r.is_open for r in second.get_phase_records(running))
            assert second.get_instance_status(done) == InstanceStatus.COMPLETED
        finally:
            second.close()
