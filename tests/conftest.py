"""
Shared fixtures for phaseflow tests.

Engine tests drive asyncio with asyncio.run() inside synchronous tests and
use FakeInvoker, an in-process stand-in for the Capability Invoker. Invoker
tests spawn real processes through sys.executable.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import sys
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import pytest
import yaml

from phaseflow.config.runtime_config import RuntimeSettings, reset_config
from phaseflow.runtime.dependency_resolver import DependencyResolver
from phaseflow.runtime.engine import ExecutionEngine
from phaseflow.runtime.events import EventBus
from phaseflow.runtime.importer import WorkflowImporter
from phaseflow.runtime.store import DefinitionStore
from phaseflow.runtime.types import InvocationResult, WorkflowDefinition

# =============================================================================
# Fake capability process (real subprocess, used by invoker and CLI tests)
# =============================================================================

FAKE_CAPABILITY_SCRIPT = textwrap.dedent(
    """
    import json
    import sys
    import time

    name = sys.argv[1]
    text = sys.stdin.read()
    if name == "crash":
        sys.stderr.write("boom\\n")
        sys.exit(3)
    if name == "garbage":
        print("this is not json")
        sys.exit(0)
    if name == "sleepy":
        print("started", flush=True)
        time.sleep(30)
        sys.exit(0)
    if name == "chapter":
        print(json.dumps({"chapter": "x" * 200000, "instruction": text}))
        sys.exit(0)
    if name == "stream":
        print("progress 1", flush=True)
        print(json.dumps({"chunk": 1}), flush=True)
        print(json.dumps({"result": "final", "echo": text}), flush=True)
        sys.exit(0)
    print(json.dumps({"capability": name, "instruction": text}))
    """
)


@pytest.fixture
def fake_capability(tmp_path: Path) -> List[str]:
    """Invoker command template running the fake capability script."""
    script = tmp_path / "fake_capability.py"
    script.write_text(FAKE_CAPABILITY_SCRIPT, encoding="utf-8")
    return [sys.executable, str(script), "{capability}"]


# =============================================================================
# In-process invoker
# =============================================================================


class FakeInvoker:
    """Records invocations and answers them without spawning processes.

    Attributes:
        results: capability id -> output dict or InvocationResult.
        blocking: capability ids whose invocations park until aborted.
        waiting: session ids currently parked.
        aborted: session ids abort() was called with.
    """

    def __init__(self) -> None:
        self.results: Dict[str, Any] = {}
        self.blocking: Set[str] = set()
        self.calls: List[Dict[str, Any]] = []
        self.waiting: List[str] = []
        self.aborted: List[str] = []
        self._ids = itertools.count(1)
        self._parked: Dict[str, asyncio.Event] = {}
        self._pre_aborted: Set[str] = set()

    def new_session_id(self) -> str:
        return f"session-{next(self._ids)}"

    def abort(self, session_id: str) -> bool:
        self.aborted.append(session_id)
        event = self._parked.get(session_id)
        if event is not None:
            event.set()
        else:
            self._pre_aborted.add(session_id)
        return True

    async def invoke(
        self,
        capability_id: str,
        instruction: str,
        session_id: Optional[str] = None,
        cwd: Any = None,
        on_output: Optional[Callable[[str, str], None]] = None,
    ) -> InvocationResult:
        session_id = session_id or self.new_session_id()
        self.calls.append(
            {"capability": capability_id, "instruction": instruction, "session_id": session_id}
        )
        aborted = InvocationResult(
            success=False, session_id=session_id, error="Invocation aborted", error_kind="aborted"
        )
        if session_id in self._pre_aborted:
            return aborted

        if capability_id in self.blocking:
            event = self._parked[session_id] = asyncio.Event()
            self.waiting.append(session_id)
            await event.wait()
            self.waiting.remove(session_id)
            return aborted

        if on_output is not None:
            on_output(session_id, f"working on {capability_id}\n")
        result = self.results.get(capability_id)
        if isinstance(result, InvocationResult):
            return replace(result, session_id=session_id)
        return InvocationResult(
            success=True,
            session_id=session_id,
            output=result if result is not None else {"capability": capability_id},
            exit_code=0,
        )

    @property
    def invoked(self) -> List[str]:
        return [c["capability"] for c in self.calls]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate while letting the event loop run other tasks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Definitions and packages
# =============================================================================


def phase(index: int, type_: str = "planning", **fields: Any) -> Dict[str, Any]:
    """Manifest phase dict with sensible defaults."""
    data: Dict[str, Any] = {
        "id": index,
        "name": fields.pop("name", f"Phase {index}"),
        "type": type_,
        "agent": fields.pop("agent", "writer-agent"),
        "description": fields.pop("description", f"Do step {index}"),
    }
    data.update(fields)
    return data


def manifest(
    definition_id: str,
    phases: List[Dict[str, Any]],
    version: str = "1.0.0",
    dependencies: Optional[Dict[str, List[str]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": definition_id,
        "name": extra.pop("name", definition_id.replace("-", " ").title()),
        "version": version,
        "description": extra.pop("description", f"{definition_id} workflow"),
        "dependencies": dependencies or {},
        "phases": phases,
    }
    data.update(extra)
    return data


def write_package(
    root: Path,
    data: Dict[str, Any],
    agents: Optional[Dict[str, str]] = None,
    skills: Optional[Dict[str, str]] = None,
    filename: str = "workflow.yaml",
) -> Path:
    """Write a workflow package folder and return its path."""
    root.mkdir(parents=True, exist_ok=True)
    target = root / filename
    if filename.endswith(".json"):
        target.write_text(json.dumps(data, indent=2), encoding="utf-8")
    else:
        target.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    for subdir, files in (("agents", agents), ("skills", skills)):
        for name, body in (files or {}).items():
            (root / subdir).mkdir(exist_ok=True)
            (root / subdir / f"{name}.md").write_text(body, encoding="utf-8")
    return root


def store_definition(store: DefinitionStore, data: Dict[str, Any]) -> WorkflowDefinition:
    """Upsert a definition directly, bypassing import checks."""
    from phaseflow.runtime.manifest import parse_manifest

    stored, _ = store.upsert_definition(parse_manifest(data))
    return stored


# =============================================================================
# Component fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_runtime_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def store():
    s = DefinitionStore()
    yield s
    s.close()


@pytest.fixture
def capability_dirs(tmp_path: Path) -> Dict[str, Path]:
    dirs = {"agents": tmp_path / "installed" / "agents", "skills": tmp_path / "installed" / "skills"}
    for d in dirs.values():
        d.mkdir(parents=True)
    return dirs


@pytest.fixture
def resolver(store, capability_dirs) -> DependencyResolver:
    return DependencyResolver(
        capability_dirs["agents"],
        capability_dirs["skills"],
        store=store,
        external_tools=["workflow-manager"],
    )


@pytest.fixture
def importer(store, resolver) -> WorkflowImporter:
    return WorkflowImporter(store, resolver)


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(store, fake_invoker, events) -> ExecutionEngine:
    return ExecutionEngine(store, fake_invoker, events)


@pytest.fixture
def settings(tmp_path: Path, capability_dirs, fake_capability) -> RuntimeSettings:
    return RuntimeSettings(
        db_path=None,
        agents_dir=capability_dirs["agents"],
        skills_dir=capability_dirs["skills"],
        external_tools=["workflow-manager"],
        invoker_command=fake_capability,
        timeout_seconds=30,
    )
