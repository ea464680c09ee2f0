"""
manifest.py - Locate, parse and validate workflow package manifests.

A workflow package is a folder:

    my-workflow/
      workflow.yaml        (or workflow.yml / workflow.json; exactly one)
      agents/<name>.md     (optional bundled agents)
      skills/<name>.md     (optional bundled skills)

The manifest describes phases either as a ``phases`` list or as the nodes of
a ``graph_json`` (or ``graph``) object. Either form is normalized into a
WorkflowDefinition; validation problems are collected and reported together
in a single ManifestInvalid error.

Usage:
    from phaseflow.runtime.manifest import find_manifest, load_definition

    manifest_path = find_manifest(package_dir)
    definition = load_definition(manifest_path)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ManifestAmbiguous, ManifestInvalid, ManifestNotFound
from .types import (
    PhaseType,
    WorkflowDefinition,
    WorkflowDependencies,
    WorkflowPhase,
    parse_phase_type,
)

logger = logging.getLogger(__name__)

MANIFEST_CANDIDATES = ("workflow.yaml", "workflow.yml", "workflow.json")
DEFAULT_VERSION = "1.0.0"
DEPENDENCY_KEYS = ("agents", "skills", "externalTools", "mcpServers", "subWorkflows")


# =============================================================================
# Locating and reading
# =============================================================================


def find_manifest(package_dir: Path) -> Path:
    """Return the single canonical manifest file in a package folder.

    Raises:
        ManifestNotFound: If the folder is missing or holds no candidate.
        ManifestAmbiguous: If more than one candidate is present.
    """
    package_dir = Path(package_dir)
    if not package_dir.is_dir():
        raise ManifestNotFound(
            f"Workflow package folder not found: {package_dir}",
            {"packagePath": str(package_dir)},
        )

    found = [package_dir / name for name in MANIFEST_CANDIDATES if (package_dir / name).is_file()]
    if not found:
        raise ManifestNotFound(
            f"No {' / '.join(MANIFEST_CANDIDATES)} found in {package_dir}",
            {"packagePath": str(package_dir)},
        )
    if len(found) > 1:
        raise ManifestAmbiguous(
            f"Multiple manifests found in {package_dir}: {', '.join(p.name for p in found)}",
            {"packagePath": str(package_dir), "candidates": [p.name for p in found]},
        )
    return found[0]


def read_manifest(manifest_path: Path) -> Dict[str, Any]:
    """Parse a manifest file (YAML or JSON) into a dict.

    Raises:
        ManifestInvalid: If the file cannot be parsed or is not a mapping.
    """
    manifest_path = Path(manifest_path)
    try:
        text = manifest_path.read_text(encoding="utf-8")
        if manifest_path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestInvalid(f"Failed to parse {manifest_path.name}: {e}", [str(e)]) from e

    if not isinstance(data, dict):
        raise ManifestInvalid(
            f"{manifest_path.name} must contain a mapping at the top level",
            ["top-level value is not a mapping"],
        )
    return data


def load_definition(manifest_path: Path) -> WorkflowDefinition:
    """Read and validate a manifest file into a WorkflowDefinition."""
    manifest_path = Path(manifest_path)
    data = read_manifest(manifest_path)
    return parse_manifest(data, default_id=manifest_path.parent.name)


# =============================================================================
# Normalization and validation
# =============================================================================


def _node_id(value: Any, index: int) -> Any:
    if value is None:
        return index
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value


def _node_to_phase_dict(node: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Convert a graph node into the phase dict shape."""
    data = node.get("data") if isinstance(node.get("data"), dict) else {}
    embedded = data.get("phase") if isinstance(data.get("phase"), dict) else None
    if embedded is not None:
        phase = dict(embedded)
        phase.setdefault("id", _node_id(node.get("id"), index))
        phase.setdefault("position", node.get("position"))
        return phase

    merged = dict(data)
    merged.update({k: v for k, v in node.items() if k != "data"})
    return {
        "id": _node_id(merged.get("id"), index),
        "name": merged.get("name") or merged.get("label"),
        "type": merged.get("type") or "planning",
        "agent": merged.get("agent"),
        "skill": merged.get("skill"),
        "subWorkflowId": merged.get("subWorkflowId"),
        "description": merged.get("description") or merged.get("prompt") or "",
        "gateCondition": merged.get("gateCondition") or merged.get("condition"),
        "requiresApproval": merged.get("requiresApproval", False),
        "position": merged.get("position"),
        "loopPhases": merged.get("loopPhases"),
        "maxIterations": merged.get("maxIterations"),
    }


def _raw_phases(data: Dict[str, Any]) -> Optional[List[Any]]:
    if data.get("phases") is not None:
        return data["phases"]
    for key in ("graph_json", "graph"):
        graph = data.get(key)
        if isinstance(graph, dict) and isinstance(graph.get("nodes"), list):
            logger.debug("Converting %s nodes to phases", key)
            return [
                _node_to_phase_dict(node, i) if isinstance(node, dict) else node
                for i, node in enumerate(graph["nodes"])
            ]
    return None


def _validate_phases(raw: Any, path: str, problems: List[str]) -> List[WorkflowPhase]:
    if not isinstance(raw, list) or not raw:
        problems.append(f"{path}: must be a non-empty list")
        return []

    phases: List[WorkflowPhase] = []
    for index, item in enumerate(raw):
        where = f"{path}[{index}]"
        if not isinstance(item, dict):
            problems.append(f"{where}: must be a mapping")
            continue
        try:
            phase_type = parse_phase_type(item.get("type") or "planning")
        except ValueError:
            problems.append(f"{where}: unknown phase type {item.get('type')!r}")
            continue

        if not str(item.get("agent") or "").strip():
            problems.append(f"{where}: missing 'agent'")
        if phase_type == PhaseType.SUBWORKFLOW and not str(item.get("subWorkflowId") or "").strip():
            problems.append(f"{where}: subworkflow phase requires 'subWorkflowId'")

        max_iterations = item.get("maxIterations")
        if max_iterations is not None:
            valid = isinstance(max_iterations, int) and not isinstance(max_iterations, bool)
            if not valid or max_iterations < 1:
                problems.append(f"{where}: 'maxIterations' must be a positive integer")
                item = {k: v for k, v in item.items() if k != "maxIterations"}

        inner: List[WorkflowPhase] = []
        if phase_type == PhaseType.LOOP:
            inner = _validate_phases(item.get("loopPhases"), f"{where}.loopPhases", problems)

        phase = WorkflowPhase.from_dict({**item, "loopPhases": None}, index)
        phase.loop_phases = inner
        phases.append(phase)
    return phases


def build_linear_graph(phases: List[WorkflowPhase]) -> Dict[str, Any]:
    """Presentation graph: one node per phase, sequential edges."""
    nodes = [
        {
            "id": str(phase.index),
            "type": phase.type.value,
            "data": {"label": phase.name, "phase": phase.to_dict()},
            "position": phase.position.to_dict(),
        }
        for phase in phases
    ]
    edges = [
        {"id": f"e{i}-{i + 1}", "source": str(i), "target": str(i + 1)}
        for i in range(len(phases) - 1)
    ]
    return {"nodes": nodes, "edges": edges}


def parse_manifest(data: Dict[str, Any], default_id: Optional[str] = None) -> WorkflowDefinition:
    """Validate manifest data into a WorkflowDefinition.

    Raises:
        ManifestInvalid: With every problem found, if any.
    """
    problems: List[str] = []

    definition_id = str(data.get("id") or data.get("workflow_def_id") or default_id or "").strip()
    if not definition_id:
        problems.append("missing 'id'")
    name = str(data.get("name") or "").strip()
    if not name:
        problems.append("missing 'name'")

    raw_phases = _raw_phases(data)
    if raw_phases is None:
        problems.append("missing 'phases' (or 'graph_json.nodes')")
        phases: List[WorkflowPhase] = []
    else:
        phases = _validate_phases(raw_phases, "phases", problems)

    dependencies = data.get("dependencies")
    if dependencies is not None and not isinstance(dependencies, dict):
        problems.append("'dependencies' must be a mapping")
        dependencies = None
    elif dependencies is not None:
        for key in DEPENDENCY_KEYS:
            names = dependencies.get(key)
            if names is None:
                continue
            if not isinstance(names, list) or not all(
                isinstance(n, str) and n.strip() for n in names
            ):
                problems.append(f"dependencies.{key}: must be a list of names")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        problems.append("'metadata' must be a mapping")
        metadata = {}

    if problems:
        raise ManifestInvalid(
            f"Invalid workflow manifest ({len(problems)} problem(s)): {problems[0]}",
            problems,
        )

    tags = data.get("tags")
    if tags is None:
        tags = metadata.get("tags") or []

    graph = data.get("graph_json") or data.get("graph")
    if not isinstance(graph, dict) or not graph.get("nodes"):
        graph = build_linear_graph(phases)

    return WorkflowDefinition(
        id=definition_id,
        version=str(data.get("version") or DEFAULT_VERSION),
        name=name,
        description=str(data.get("description") or ""),
        graph=graph,
        dependencies=WorkflowDependencies.from_dict(dependencies),
        phases=phases,
        tags=[str(t) for t in tags],
        metadata=dict(metadata),
        is_system=bool(data.get("isSystem", False)),
        created_by=data.get("createdBy") or metadata.get("author"),
    )


# =============================================================================
# Export
# =============================================================================


def definition_to_manifest(definition: WorkflowDefinition) -> Dict[str, Any]:
    """Manifest-shaped dict for a stored definition (re-importable)."""
    return {
        "id": definition.id,
        "name": definition.name,
        "version": definition.version,
        "description": definition.description,
        "graph_json": definition.graph,
        "dependencies": definition.dependencies.to_dict(),
        "phases": [p.to_dict() for p in definition.phases],
        "tags": list(definition.tags),
        "metadata": dict(definition.metadata),
    }


def dump_manifest(definition: WorkflowDefinition, fmt: str = "yaml") -> str:
    """Serialize a definition as a YAML or JSON manifest."""
    manifest = definition_to_manifest(definition)
    if fmt == "json":
        return json.dumps(manifest, indent=2, ensure_ascii=False)
    if fmt in ("yaml", "yml"):
        return yaml.safe_dump(manifest, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported manifest format: {fmt}")
