"""
gates.py - Gate validator contract and the default key-lookup validator.

The engine delegates gate evaluation to a validator: any callable taking a
GateRequest and returning a GateDecision (or an awaitable of one). The
engine enforces the decision; a failed gate halts the instance unless the
decision redirects forward.

The default validator treats ``gateCondition`` as the name of a value: it
looks the key up in the outputs of earlier phases (most recent first), then
in the instance's context variables, and passes when the value is truthy.
A leading "!" negates the lookup. It is not an expression language.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .types import GateDecision, InstanceId, WorkflowPhase


@dataclass
class GateRequest:
    """Everything a validator may inspect for one gate phase."""

    instance_id: InstanceId
    phase: WorkflowPhase
    condition: Optional[str]
    outputs: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)


GateValidator = Callable[[GateRequest], Union[GateDecision, Awaitable[GateDecision]]]

_MISSING = object()


def _lookup(key: str, request: GateRequest) -> Any:
    for output in reversed(request.outputs):
        if isinstance(output, dict) and key in output:
            return output[key]
    return request.variables.get(key, _MISSING)


def key_lookup_validator(request: GateRequest) -> GateDecision:
    """Default validator: pass when the named output/variable is truthy."""
    condition = (request.condition or "").strip()
    if not condition:
        return GateDecision(passed=True, reason="No gate condition")

    negate = condition.startswith("!")
    key = condition[1:].strip() if negate else condition
    value = _lookup(key, request)
    if value is _MISSING:
        return GateDecision(
            passed=False,
            reason=f"Gate condition {condition!r} references unknown value {key!r}",
            details={"key": key},
        )

    passed = (not value) if negate else bool(value)
    return GateDecision(
        passed=passed,
        reason=f"{condition!r} evaluated to {passed}",
        details={"key": key, "value": value},
    )
