"""
store.py - DuckDB-backed Definition and Instance Store.

This module is the single shared mutable resource of the runtime. It holds:
- Workflow definitions keyed by (id, version)
- Import audit entries
- Workflow instances and their append-only phase execution records
- Version locks (advisory, shared)

Design Philosophy:
    - One DuckDB connection guarded by a re-entrant lock; safe to use from
      the engine's event loop and from API worker threads.
    - Phase history is append-only. The only update a record ever sees is
      the one that closes it (completion timestamp, status, output).
    - transaction() groups writes that must be observed together, e.g. a
      terminal status change plus the release of the instance's lock.

Usage:
    from phaseflow.runtime.store import DefinitionStore

    store = DefinitionStore()              # in-memory
    store = DefinitionStore(db_path)       # persistent
    store.upsert_definition(definition)
    definition = store.get_definition("novel-pipeline")          # latest import
    definition = store.get_definition("novel-pipeline", "1.2.0") # exact version
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import duckdb

from .types import (
    TERMINAL_STATUSES,
    DefinitionId,
    ImportRecord,
    InstanceId,
    InstanceStatus,
    PhaseExecutionRecord,
    VersionLock,
    WorkflowDefinition,
    WorkflowDependencies,
    WorkflowInstance,
    WorkflowPhase,
    generate_instance_id,
    utcnow,
)
from .types._time import _datetime_to_iso, _iso_to_datetime

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    created_at VARCHAR
);

-- Definitions: one row per (id, version)
CREATE SEQUENCE IF NOT EXISTS definition_import_seq;
CREATE TABLE IF NOT EXISTS workflow_definitions (
    id VARCHAR NOT NULL,
    version VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    description VARCHAR,
    graph_json JSON,
    dependencies_json JSON,
    phases_json JSON,
    tags JSON,
    marketplace_metadata JSON,
    is_system BOOLEAN DEFAULT FALSE,
    created_by VARCHAR,
    import_seq BIGINT NOT NULL,  -- orders versions by most recent import
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL,
    PRIMARY KEY (id, version)
);

-- Import audit trail
CREATE SEQUENCE IF NOT EXISTS workflow_imports_id_seq;
CREATE TABLE IF NOT EXISTS workflow_imports (
    id BIGINT PRIMARY KEY DEFAULT nextval('workflow_imports_id_seq'),
    workflow_def_id VARCHAR NOT NULL,
    version VARCHAR NOT NULL,
    source_type VARCHAR NOT NULL,  -- folder
    source_path VARCHAR NOT NULL,
    installation_log JSON,
    imported_at VARCHAR NOT NULL
);

-- Instances: one row per execution, retained after terminal status
CREATE TABLE IF NOT EXISTS workflow_instances (
    id VARCHAR PRIMARY KEY,
    definition_id VARCHAR NOT NULL,
    version VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    current_phase INTEGER DEFAULT 0,
    context JSON,
    parent_instance_id VARCHAR,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL,
    started_at VARCHAR,
    completed_at VARCHAR,
    error_message VARCHAR,
    error_kind VARCHAR,
    error_phase INTEGER
);

-- Phase execution records: append-only per (instance, phase)
CREATE SEQUENCE IF NOT EXISTS phase_executions_id_seq;
CREATE TABLE IF NOT EXISTS phase_executions (
    id BIGINT PRIMARY KEY DEFAULT nextval('phase_executions_id_seq'),
    instance_id VARCHAR NOT NULL,
    phase_index INTEGER NOT NULL,
    phase_id JSON,
    status VARCHAR NOT NULL,  -- running, completed, failed, cancelled
    session_id VARCHAR,
    capability_id VARCHAR,
    output JSON,
    error_message VARCHAR,
    started_at VARCHAR NOT NULL,
    completed_at VARCHAR
);

-- Version locks: shared, advisory
CREATE TABLE IF NOT EXISTS version_locks (
    definition_id VARCHAR NOT NULL,
    version VARCHAR NOT NULL,
    instance_id VARCHAR NOT NULL,
    locked_at VARCHAR NOT NULL,
    PRIMARY KEY (definition_id, version, instance_id)
);
"""

_DEFINITION_COLUMNS = (
    "id, version, name, description, graph_json, dependencies_json, phases_json, "
    "tags, marketplace_metadata, is_system, created_by, created_at, updated_at"
)

_INSTANCE_COLUMNS = (
    "id, definition_id, version, status, current_phase, context, parent_instance_id, "
    "created_at, updated_at, started_at, completed_at, error_message, error_kind, error_phase"
)

_RECORD_COLUMNS = (
    "id, instance_id, phase_index, phase_id, status, session_id, capability_id, "
    "output, error_message, started_at, completed_at"
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _now_iso() -> str:
    return _datetime_to_iso(utcnow())


class DefinitionStore:
    """DuckDB-backed store for definitions, instances, phase history and locks.

    Thread-safe wrapper around a single DuckDB connection.

    Attributes:
        db_path: Path to the DuckDB database file (None = in-memory).
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._tx_depth = 0

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection, initializing the schema once."""
        if self._connection is None:
            with self._lock:
                if self._connection is None:
                    if self.db_path:
                        self.db_path.parent.mkdir(parents=True, exist_ok=True)
                        self._connection = duckdb.connect(str(self.db_path))
                    else:
                        self._connection = duckdb.connect(":memory:")
                    self._init_schema(self._connection)
        return self._connection

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute(CREATE_TABLES_SQL)
        row = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO schema_version (version, created_at) VALUES (?, ?)",
                [SCHEMA_VERSION, _now_iso()],
            )
        logger.debug("DefinitionStore schema initialized (schema_version=%d)", SCHEMA_VERSION)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            with self._lock:
                self._connection.close()
                self._connection = None

    @contextmanager
    def transaction(self) -> Iterator["DefinitionStore"]:
        """Group store writes into one atomic unit. Nested calls join the outer one."""
        with self._lock:
            conn = self.connection
            outer = self._tx_depth == 0
            if outer:
                conn.execute("BEGIN TRANSACTION")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if outer:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._tx_depth -= 1
                if outer:
                    conn.execute("COMMIT")

    def _execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> duckdb.DuckDBPyConnection:
        with self._lock:
            return self.connection.execute(sql, params or [])

    def _fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Tuple[Any, ...]]:
        with self._lock:
            return self.connection.execute(sql, params or []).fetchall()

    def _fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Tuple[Any, ...]]:
        with self._lock:
            return self.connection.execute(sql, params or []).fetchone()

    # =========================================================================
    # Definitions
    # =========================================================================

    def upsert_definition(self, definition: WorkflowDefinition) -> Tuple[WorkflowDefinition, bool]:
        """Insert or overwrite a definition keyed by (id, version).

        Re-importing an existing (id, version) overwrites its content and
        marks it as the most recently imported version of that id.

        Returns:
            Tuple of (stored definition, created) where created is False when
            an existing row was overwritten.
        """
        now = _now_iso()
        with self._lock:
            existing = self._fetchone(
                "SELECT created_at FROM workflow_definitions WHERE id = ? AND version = ?",
                [definition.id, definition.version],
            )
            seq = self._fetchone("SELECT nextval('definition_import_seq')")[0]
            self._execute(
                """
                INSERT INTO workflow_definitions (
                    id, version, name, description, graph_json, dependencies_json,
                    phases_json, tags, marketplace_metadata, is_system, created_by,
                    import_seq, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id, version) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    graph_json = excluded.graph_json,
                    dependencies_json = excluded.dependencies_json,
                    phases_json = excluded.phases_json,
                    tags = excluded.tags,
                    marketplace_metadata = excluded.marketplace_metadata,
                    is_system = excluded.is_system,
                    created_by = excluded.created_by,
                    import_seq = excluded.import_seq,
                    updated_at = excluded.updated_at
                """,
                [
                    definition.id,
                    definition.version,
                    definition.name,
                    definition.description,
                    _dumps(definition.graph),
                    _dumps(definition.dependencies.to_dict()),
                    _dumps([p.to_dict() for p in definition.phases]),
                    _dumps(list(definition.tags)),
                    _dumps(definition.metadata),
                    definition.is_system,
                    definition.created_by,
                    seq,
                    existing[0] if existing else now,
                    now,
                ],
            )
            stored = self.get_definition(definition.id, definition.version)

        created = existing is None
        logger.debug(
            "%s definition %s@%s",
            "Created" if created else "Overwrote",
            definition.id,
            definition.version,
        )
        return stored, created

    def get_definition(
        self, definition_id: DefinitionId, version: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        """Get a definition by exact version, or the most recently imported one."""
        if version:
            row = self._fetchone(
                f"SELECT {_DEFINITION_COLUMNS} FROM workflow_definitions "
                "WHERE id = ? AND version = ?",
                [definition_id, version],
            )
        else:
            row = self._fetchone(
                f"SELECT {_DEFINITION_COLUMNS} FROM workflow_definitions "
                "WHERE id = ? ORDER BY import_seq DESC LIMIT 1",
                [definition_id],
            )
        return self._row_to_definition(row) if row else None

    def get_definitions(
        self,
        tag: Optional[str] = None,
        is_system: Optional[bool] = None,
        search: Optional[str] = None,
        latest_only: bool = True,
    ) -> List[WorkflowDefinition]:
        """Query definitions.

        Args:
            tag: Only definitions carrying this tag.
            is_system: Filter on the system flag.
            search: Case-insensitive substring match on name or description.
            latest_only: Return only the most recently imported version per id.
        """
        rows = self._fetchall(
            f"SELECT {_DEFINITION_COLUMNS} FROM workflow_definitions "
            "ORDER BY id, import_seq DESC"
        )
        results: List[WorkflowDefinition] = []
        seen: Set[str] = set()
        needle = search.lower() if search else None
        for row in rows:
            definition = self._row_to_definition(row)
            if latest_only:
                if definition.id in seen:
                    continue
                seen.add(definition.id)
            if tag is not None and tag not in definition.tags:
                continue
            if is_system is not None and definition.is_system != is_system:
                continue
            if needle and needle not in (definition.name + " " + definition.description).lower():
                continue
            results.append(definition)
        return results

    def list_versions(self, definition_id: DefinitionId) -> List[str]:
        """Versions of a definition, most recently imported first."""
        rows = self._fetchall(
            "SELECT version FROM workflow_definitions WHERE id = ? ORDER BY import_seq DESC",
            [definition_id],
        )
        return [r[0] for r in rows]

    def existing_definition_ids(self, definition_ids: Iterable[str]) -> Set[str]:
        """Subset of the given ids that have at least one stored version."""
        ids = sorted(set(definition_ids))
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        rows = self._fetchall(
            f"SELECT DISTINCT id FROM workflow_definitions WHERE id IN ({placeholders})",
            ids,
        )
        return {r[0] for r in rows}

    def _row_to_definition(self, row: Tuple[Any, ...]) -> WorkflowDefinition:
        (
            def_id,
            version,
            name,
            description,
            graph_json,
            dependencies_json,
            phases_json,
            tags,
            metadata,
            is_system,
            created_by,
            created_at,
            updated_at,
        ) = row
        return WorkflowDefinition(
            id=def_id,
            version=version,
            name=name,
            description=description or "",
            graph=_loads(graph_json, {}),
            dependencies=WorkflowDependencies.from_dict(_loads(dependencies_json, {})),
            phases=[
                WorkflowPhase.from_dict(p, i) for i, p in enumerate(_loads(phases_json, []))
            ],
            tags=list(_loads(tags, [])),
            metadata=_loads(metadata, {}),
            is_system=bool(is_system),
            created_by=created_by,
            created_at=_iso_to_datetime(created_at),
            updated_at=_iso_to_datetime(updated_at),
        )

    # =========================================================================
    # Import audit
    # =========================================================================

    def record_import(
        self,
        definition_id: DefinitionId,
        version: str,
        source_path: str,
        installation_log: Dict[str, Any],
        source_type: str = "folder",
    ) -> ImportRecord:
        """Append an import audit entry."""
        row = self._fetchone(
            """
            INSERT INTO workflow_imports (
                workflow_def_id, version, source_type, source_path, installation_log, imported_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id, workflow_def_id, version, source_type, source_path,
                      installation_log, imported_at
            """,
            [definition_id, version, source_type, source_path, _dumps(installation_log), _now_iso()],
        )
        return self._row_to_import(row)

    def list_imports(self, definition_id: Optional[DefinitionId] = None) -> List[ImportRecord]:
        sql = (
            "SELECT id, workflow_def_id, version, source_type, source_path, installation_log, "
            "imported_at FROM workflow_imports"
        )
        params: List[Any] = []
        if definition_id is not None:
            sql += " WHERE workflow_def_id = ?"
            params.append(definition_id)
        sql += " ORDER BY id"
        return [self._row_to_import(r) for r in self._fetchall(sql, params)]

    def _row_to_import(self, row: Tuple[Any, ...]) -> ImportRecord:
        return ImportRecord(
            id=row[0],
            definition_id=row[1],
            version=row[2],
            source_type=row[3],
            source_path=row[4],
            installation_log=_loads(row[5], {}),
            imported_at=_iso_to_datetime(row[6]),
        )

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(
        self,
        definition_id: DefinitionId,
        version: str,
        context: Optional[Dict[str, Any]] = None,
        parent_instance_id: Optional[InstanceId] = None,
        current_phase: int = 0,
    ) -> InstanceId:
        """Create a PENDING instance pinned to (definition_id, version)."""
        instance_id = generate_instance_id()
        now = _now_iso()
        self._execute(
            """
            INSERT INTO workflow_instances (
                id, definition_id, version, status, current_phase, context,
                parent_instance_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                instance_id,
                definition_id,
                version,
                InstanceStatus.PENDING.value,
                current_phase,
                _dumps(context or {}),
                parent_instance_id,
                now,
                now,
            ],
        )
        return instance_id

    def get_instance(self, instance_id: InstanceId) -> Optional[WorkflowInstance]:
        row = self._fetchone(
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?", [instance_id]
        )
        return self._row_to_instance(row) if row else None

    def get_instance_status(self, instance_id: InstanceId) -> Optional[InstanceStatus]:
        row = self._fetchone("SELECT status FROM workflow_instances WHERE id = ?", [instance_id])
        return InstanceStatus(row[0]) if row else None

    def list_instances(
        self,
        definition_id: Optional[DefinitionId] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
        parent_instance_id: Optional[InstanceId] = None,
    ) -> List[WorkflowInstance]:
        clauses: List[str] = []
        params: List[Any] = []
        if definition_id is not None:
            clauses.append("definition_id = ?")
            params.append(definition_id)
        if statuses is not None:
            values = [InstanceStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append("status IN (" + ", ".join("?" for _ in values) + ")")
            params.extend(values)
        if parent_instance_id is not None:
            clauses.append("parent_instance_id = ?")
            params.append(parent_instance_id)
        sql = f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"
        return [self._row_to_instance(r) for r in self._fetchall(sql, params)]

    def update_instance(
        self,
        instance_id: InstanceId,
        status: Optional[InstanceStatus] = None,
        current_phase: Optional[int] = None,
    ) -> None:
        """Update a non-terminal instance's status and/or current phase."""
        now = _now_iso()
        sets = ["updated_at = ?"]
        params: List[Any] = [now]
        if status is not None:
            sets.append("status = ?")
            params.append(status.value)
            if status == InstanceStatus.RUNNING:
                sets.append("started_at = COALESCE(started_at, ?)")
                params.append(now)
        if current_phase is not None:
            sets.append("current_phase = ?")
            params.append(current_phase)
        params.append(instance_id)
        self._execute(f"UPDATE workflow_instances SET {', '.join(sets)} WHERE id = ?", params)

    def finish_instance(
        self,
        instance_id: InstanceId,
        status: InstanceStatus,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        error_phase: Optional[int] = None,
    ) -> None:
        """Move an instance to a terminal status."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finish_instance requires a terminal status, got {status}")
        now = _now_iso()
        self._execute(
            """
            UPDATE workflow_instances SET
                status = ?, completed_at = ?, updated_at = ?,
                error_message = ?, error_kind = ?, error_phase = ?
            WHERE id = ?
            """,
            [status.value, now, now, error, error_kind, error_phase, instance_id],
        )

    def _row_to_instance(self, row: Tuple[Any, ...]) -> WorkflowInstance:
        return WorkflowInstance(
            id=row[0],
            definition_id=row[1],
            version=row[2],
            status=InstanceStatus(row[3]),
            current_phase=row[4] or 0,
            context=_loads(row[5], {}),
            parent_instance_id=row[6],
            created_at=_iso_to_datetime(row[7]),
            updated_at=_iso_to_datetime(row[8]),
            started_at=_iso_to_datetime(row[9]),
            completed_at=_iso_to_datetime(row[10]),
            error=row[11],
            error_kind=row[12],
            error_phase=row[13],
        )

    # =========================================================================
    # Phase execution records
    # =========================================================================

    def append_phase_record(self, instance_id: InstanceId, phase_index: int, phase_id: Any) -> int:
        """Append an open record for a phase that is starting.

        Raises:
            RuntimeError: If the instance already has an open record.
        """
        with self._lock:
            open_row = self._fetchone(
                "SELECT id, phase_index FROM phase_executions "
                "WHERE instance_id = ? AND completed_at IS NULL",
                [instance_id],
            )
            if open_row is not None:
                raise RuntimeError(
                    f"Instance {instance_id} already has an open record for phase {open_row[1]}"
                )
            row = self._fetchone(
                """
                INSERT INTO phase_executions (instance_id, phase_index, phase_id, status, started_at)
                VALUES (?, ?, ?, 'running', ?)
                RETURNING id
                """,
                [instance_id, phase_index, _dumps(phase_id), _now_iso()],
            )
        return row[0]

    def complete_phase_record(
        self,
        record_id: int,
        status: str,
        session_id: Optional[str] = None,
        capability_id: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Close an open record. Closed records are never modified again."""
        self._execute(
            """
            UPDATE phase_executions SET
                status = ?, session_id = ?, capability_id = ?, output = ?,
                error_message = ?, completed_at = ?
            WHERE id = ? AND completed_at IS NULL
            """,
            [status, session_id, capability_id, _dumps(output), error, _now_iso(), record_id],
        )

    def get_phase_records(self, instance_id: InstanceId) -> List[PhaseExecutionRecord]:
        rows = self._fetchall(
            f"SELECT {_RECORD_COLUMNS} FROM phase_executions WHERE instance_id = ? ORDER BY id",
            [instance_id],
        )
        return [
            PhaseExecutionRecord(
                id=r[0],
                instance_id=r[1],
                phase_index=r[2],
                phase_id=_loads(r[3]),
                status=r[4],
                session_id=r[5],
                capability_id=r[6],
                output=_loads(r[7]),
                error=r[8],
                started_at=_iso_to_datetime(r[9]),
                completed_at=_iso_to_datetime(r[10]),
            )
            for r in rows
        ]

    # =========================================================================
    # Version locks
    # =========================================================================

    def lock_version(self, definition_id: DefinitionId, version: str, instance_id: InstanceId) -> bool:
        """Insert a lock row. Returns False if the instance already held it."""
        row = self._fetchone(
            """
            INSERT INTO version_locks (definition_id, version, instance_id, locked_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            RETURNING instance_id
            """,
            [definition_id, version, instance_id, _now_iso()],
        )
        return row is not None

    def unlock_version(self, definition_id: DefinitionId, version: str, instance_id: InstanceId) -> bool:
        """Delete a lock row. Returns False if there was nothing to delete."""
        row = self._fetchone(
            """
            DELETE FROM version_locks
            WHERE definition_id = ? AND version = ? AND instance_id = ?
            RETURNING instance_id
            """,
            [definition_id, version, instance_id],
        )
        return row is not None

    def get_locks(
        self,
        definition_id: Optional[DefinitionId] = None,
        version: Optional[str] = None,
        instance_id: Optional[InstanceId] = None,
    ) -> List[VersionLock]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("definition_id", definition_id),
            ("version", version),
            ("instance_id", instance_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        sql = "SELECT definition_id, version, instance_id, locked_at FROM version_locks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY locked_at, instance_id"
        return [
            VersionLock(
                definition_id=r[0],
                version=r[1],
                instance_id=r[2],
                locked_at=_iso_to_datetime(r[3]),
            )
            for r in self._fetchall(sql, params)
        ]

    # =========================================================================
    # Recovery
    # =========================================================================

    def recover_interrupted_instances(self) -> List[InstanceId]:
        """Fail instances left non-terminal by a previous process and drop their locks.

        Nothing in a fresh process can resume them, so keeping them
        non-terminal would hold their versions locked forever.
        """
        open_statuses = [s.value for s in InstanceStatus if s not in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in open_statuses)
        recovered: List[InstanceId] = []
        with self.transaction():
            rows = self._fetchall(
                f"SELECT id, definition_id, version, current_phase FROM workflow_instances "
                f"WHERE status IN ({placeholders})",
                open_statuses,
            )
            for instance_id, definition_id, version, current_phase in rows:
                self._execute(
                    "UPDATE phase_executions SET status = 'failed', "
                    "error_message = 'interrupted', completed_at = ? "
                    "WHERE instance_id = ? AND completed_at IS NULL",
                    [_now_iso(), instance_id],
                )
                self.finish_instance(
                    instance_id,
                    InstanceStatus.FAILED,
                    error="Interrupted: runtime restarted while instance was active",
                    error_kind="Interrupted",
                    error_phase=current_phase,
                )
                self.unlock_version(definition_id, version, instance_id)
                recovered.append(instance_id)
        if recovered:
            logger.warning("Marked %d interrupted instance(s) as FAILED", len(recovered))
        return recovered
