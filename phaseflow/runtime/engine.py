"""
engine.py - Phase state machine driving workflow instances.

Each instance runs as its own asyncio task:

    PENDING -> RUNNING -> (WAITING_APPROVAL <-> RUNNING) -> COMPLETED | FAILED | CANCELLED

start() resolves the definition once (exact version, or the most recently
imported one), creates the instance row together with its version lock,
launches the phase loop and returns the instance id without waiting.

Phase dispatch is a table keyed by PhaseType; the constructor refuses to
build an engine whose table does not cover every phase type.

Suspension points (capability invocation, approval wait, sub-workflow wait)
all watch the instance's stop event, so cancel() takes effect at whichever
one the instance is parked on. Every exit path sets the terminal status and
releases the version lock in one store transaction.

Usage:
    engine = ExecutionEngine(store, invoker, events)
    instance_id = await engine.start("novel-pipeline", ExecutionContext(project_id="p1"))
    engine.grant_approval(instance_id, 2)
    instance = await engine.wait_for(instance_id)
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .errors import (
    CapabilityProcessError,
    DefinitionNotFound,
    ExecutionError,
    GateRejected,
    PhaseInvocationFailed,
    SubWorkflowFailed,
    WorkflowCancelled,
)
from .events import EventBus
from .gates import GateRequest, GateValidator, key_lookup_validator
from .invoker import CapabilityInvoker
from .store import DefinitionStore
from .types import (
    EventKind,
    ExecutionContext,
    InstanceId,
    InstanceStatus,
    LoopState,
    PhaseEvent,
    PhaseType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowPhase,
)
from .version_locks import VersionLockManager

logger = logging.getLogger(__name__)

DEFAULT_LOOP_MAX_ITERATIONS = 1000
DEFAULT_EVENT_RETENTION_SECONDS = 60.0

PhaseOutputCallback = Callable[[InstanceId, int, str], None]


def build_phase_instruction(phase: WorkflowPhase, context: ExecutionContext) -> str:
    """Instruction text handed to the capability for a planning/writing phase."""
    lines = [
        f"Execute {phase.name} phase.",
        f"Agent: {phase.agent}",
        f"Description: {phase.description}",
    ]
    if context.project_id:
        lines.append(f"Project: {context.project_id}")
    if context.variables:
        lines.append("Context: " + json.dumps(context.variables, sort_keys=True, default=str))
    return "\n".join(lines)


# =============================================================================
# Instance registry
# =============================================================================


@dataclass
class PhaseOutcome:
    """What a phase handler produced."""

    output: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    capability_id: Optional[str] = None
    next_index: Optional[int] = None


@dataclass
class _InstanceHandle:
    """Live state of one running instance. Owned by the InstanceRegistry."""

    instance_id: InstanceId
    definition: WorkflowDefinition
    context: ExecutionContext
    loop: asyncio.AbstractEventLoop
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[None]"] = None
    parent_id: Optional[InstanceId] = None
    ancestry: Tuple[str, ...] = ()
    current_index: int = 0
    session_id: Optional[str] = None
    approval: Optional["asyncio.Future[Tuple[bool, Optional[str]]]"] = None
    approval_index: Optional[int] = None
    children: Set[InstanceId] = field(default_factory=set)
    outputs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def stopping(self) -> bool:
        return self.stop.is_set()


class InstanceRegistry:
    """Map of running instance id -> handle (stop event + task)."""

    def __init__(self) -> None:
        self._handles: Dict[InstanceId, _InstanceHandle] = {}

    def add(self, handle: _InstanceHandle) -> None:
        self._handles[handle.instance_id] = handle

    def get(self, instance_id: InstanceId) -> Optional[_InstanceHandle]:
        return self._handles.get(instance_id)

    def remove(self, instance_id: InstanceId) -> None:
        self._handles.pop(instance_id, None)

    def ids(self) -> List[InstanceId]:
        return list(self._handles)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


# =============================================================================
# Engine
# =============================================================================


PhaseHandler = Callable[[_InstanceHandle, WorkflowPhase, bool], Awaitable[PhaseOutcome]]


class ExecutionEngine:
    """Runs workflow instances through their phases.

    Attributes:
        store: Definition/instance store.
        invoker: Capability Invoker for planning and writing phases.
        events: Event bus receiving phase and approval events.
        locks: Version Lock Manager.
        gate_validator: Evaluates gate conditions.
        strict_skills: Fail planning/writing phases that name no skill
            (otherwise they complete as a logged no-op).
        loop_max_iterations: Safety limit for predicate-driven loops.
        event_retention_seconds: How long a finished instance's event history
            stays replayable before it is dropped from the bus. None keeps it.
    """

    def __init__(
        self,
        store: DefinitionStore,
        invoker: CapabilityInvoker,
        events: Optional[EventBus] = None,
        locks: Optional[VersionLockManager] = None,
        gate_validator: Optional[GateValidator] = None,
        strict_skills: bool = True,
        loop_max_iterations: int = DEFAULT_LOOP_MAX_ITERATIONS,
        on_output: Optional[PhaseOutputCallback] = None,
        event_retention_seconds: Optional[float] = DEFAULT_EVENT_RETENTION_SECONDS,
    ):
        self.store = store
        self.invoker = invoker
        self.events = events or EventBus()
        self.locks = locks or VersionLockManager(store)
        self.gate_validator = gate_validator or key_lookup_validator
        self.strict_skills = strict_skills
        self.loop_max_iterations = loop_max_iterations
        self.on_output = on_output
        self.event_retention_seconds = event_retention_seconds
        self._registry = InstanceRegistry()

        self._handlers: Dict[PhaseType, PhaseHandler] = {
            PhaseType.PLANNING: self._run_capability_phase,
            PhaseType.WRITING: self._run_capability_phase,
            PhaseType.GATE: self._run_gate_phase,
            PhaseType.USER: self._run_user_phase,
            PhaseType.SUBWORKFLOW: self._run_subworkflow_phase,
            PhaseType.LOOP: self._run_loop_phase,
        }
        unhandled = set(PhaseType) - set(self._handlers)
        if unhandled:
            raise RuntimeError(
                "No handler for phase type(s): " + ", ".join(sorted(t.value for t in unhandled))
            )

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(
        self,
        definition_id: str,
        context: Optional[ExecutionContext] = None,
        version: Optional[str] = None,
        start_phase_index: int = 0,
        parent_instance_id: Optional[InstanceId] = None,
    ) -> InstanceId:
        """Create an instance and launch its phase loop. Returns immediately.

        Raises:
            DefinitionNotFound: If no definition matches (id, version).
            ValueError: If start_phase_index is out of range.
        """
        definition = self.store.get_definition(definition_id, version)
        if definition is None:
            raise DefinitionNotFound(definition_id, version)
        if not 0 <= start_phase_index < len(definition.phases):
            raise ValueError(
                f"start_phase_index {start_phase_index} out of range for "
                f"{definition.key} ({len(definition.phases)} phases)"
            )

        context = context or ExecutionContext()
        parent = self._registry.get(parent_instance_id) if parent_instance_id else None

        with self.store.transaction():
            instance_id = self.store.create_instance(
                definition.id,
                definition.version,
                context.to_dict(),
                parent_instance_id=parent_instance_id,
                current_phase=start_phase_index,
            )
            self.locks.acquire(definition.id, definition.version, instance_id)

        handle = _InstanceHandle(
            instance_id=instance_id,
            definition=definition,
            context=context,
            loop=asyncio.get_running_loop(),
            parent_id=parent_instance_id,
            ancestry=(parent.ancestry if parent else ()) + (definition.id,),
            current_index=start_phase_index,
        )
        self._registry.add(handle)
        handle.task = asyncio.ensure_future(self._run(handle, start_phase_index))

        logger.info(
            "Started instance %s of %s%s",
            instance_id,
            definition.key,
            f" (child of {parent_instance_id})" if parent_instance_id else "",
        )
        return instance_id

    def cancel(self, instance_id: InstanceId) -> bool:
        """Request cooperative cancellation. Returns False if the instance is not running."""
        handle = self._registry.get(instance_id)
        if handle is None:
            return False
        logger.info("Cancel requested for instance %s", instance_id)
        self._call_in_loop(handle, self._request_stop, handle)
        return True

    def grant_approval(self, instance_id: InstanceId, phase_index: int) -> bool:
        """Resume an instance waiting for approval at phase_index."""
        return self._resolve_approval(instance_id, phase_index, True, None)

    def reject_approval(
        self, instance_id: InstanceId, phase_index: int, reason: Optional[str] = None
    ) -> bool:
        """Fail the waiting user phase with GateRejected."""
        return self._resolve_approval(instance_id, phase_index, False, reason)

    def pending_approval(self, instance_id: InstanceId) -> Optional[int]:
        """Phase index an instance is waiting on, if any."""
        handle = self._registry.get(instance_id)
        if handle is None or handle.approval is None or handle.approval.done():
            return None
        return handle.approval_index

    async def wait_for(self, instance_id: InstanceId) -> Optional[WorkflowInstance]:
        """Wait until the instance reaches a terminal status and return it."""
        handle = self._registry.get(instance_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait({handle.task})
        return self.store.get_instance(instance_id)

    def running_instances(self) -> List[InstanceId]:
        return self._registry.ids()

    def is_running(self, instance_id: InstanceId) -> bool:
        return instance_id in self._registry

    async def shutdown(self) -> None:
        """Cancel every running instance and wait for all of them to finish."""
        tasks = []
        for instance_id in self._registry.ids():
            handle = self._registry.get(instance_id)
            if handle is None:
                continue
            self._request_stop(handle)
            if handle.task is not None:
                tasks.append(handle.task)
        if tasks:
            await asyncio.wait(tasks)

    # =========================================================================
    # Signalling
    # =========================================================================

    def _call_in_loop(self, handle: _InstanceHandle, fn: Callable[..., Any], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is handle.loop:
            fn(*args)
        else:
            handle.loop.call_soon_threadsafe(fn, *args)

    def _request_stop(self, handle: _InstanceHandle) -> None:
        if handle.stop.is_set():
            return
        handle.stop.set()
        if handle.session_id is not None:
            self.invoker.abort(handle.session_id)
        for child_id in list(handle.children):
            child = self._registry.get(child_id)
            if child is not None:
                self._request_stop(child)

    def _resolve_approval(
        self, instance_id: InstanceId, phase_index: int, approved: bool, reason: Optional[str]
    ) -> bool:
        handle = self._registry.get(instance_id)
        if handle is None or handle.approval is None or handle.approval.done():
            return False
        if handle.approval_index != phase_index:
            logger.warning(
                "Approval for %s phase %d ignored: waiting on phase %s",
                instance_id,
                phase_index,
                handle.approval_index,
            )
            return False

        future = handle.approval

        def settle() -> None:
            if not future.done():
                future.set_result((approved, reason))

        self._call_in_loop(handle, settle)
        logger.info(
            "Approval %s for %s phase %d",
            "granted" if approved else "rejected",
            instance_id,
            phase_index,
        )
        return True

    # =========================================================================
    # Phase loop
    # =========================================================================

    async def _run(self, handle: _InstanceHandle, start_index: int) -> None:
        instance_id = handle.instance_id
        phases = handle.definition.phases
        status = InstanceStatus.COMPLETED
        error: Optional[str] = None
        error_kind: Optional[str] = None
        error_phase: Optional[int] = None

        try:
            self.store.update_instance(instance_id, status=InstanceStatus.RUNNING)
            index = start_index
            while index < len(phases):
                if handle.stopping:
                    raise WorkflowCancelled()
                outcome = await self._execute_phase(handle, phases[index])
                index = outcome.next_index if outcome.next_index is not None else index + 1
        except WorkflowCancelled:
            status = InstanceStatus.CANCELLED
        except ExecutionError as e:
            status = InstanceStatus.FAILED
            error, error_kind = e.message, e.kind
            error_phase = e.phase_index if e.phase_index is not None else handle.current_index
        except asyncio.CancelledError:
            status = InstanceStatus.CANCELLED
            raise
        except Exception as e:
            logger.exception("Instance %s crashed", instance_id)
            status = InstanceStatus.FAILED
            error, error_kind, error_phase = str(e), "InternalError", handle.current_index
        finally:
            self._finish(handle, status, error, error_kind, error_phase)

    def _finish(
        self,
        handle: _InstanceHandle,
        status: InstanceStatus,
        error: Optional[str],
        error_kind: Optional[str],
        error_phase: Optional[int],
    ) -> None:
        """Terminal transition: status and lock release in one transaction."""
        definition = handle.definition
        try:
            with self.store.transaction():
                self.store.finish_instance(
                    handle.instance_id,
                    status,
                    error=error,
                    error_kind=error_kind,
                    error_phase=error_phase,
                )
                self.locks.release(definition.id, definition.version, handle.instance_id)
        except Exception:
            logger.exception("Failed to record terminal status for %s", handle.instance_id)
        finally:
            self._registry.remove(handle.instance_id)

        if status == InstanceStatus.FAILED:
            logger.warning(
                "Instance %s FAILED at phase %s (%s): %s",
                handle.instance_id,
                error_phase,
                error_kind,
                error,
            )
        else:
            logger.info("Instance %s %s", handle.instance_id, status.value)

        if self.event_retention_seconds is not None:
            handle.loop.call_later(
                max(0.0, self.event_retention_seconds), self.events.forget, handle.instance_id
            )

    async def _execute_phase(self, handle: _InstanceHandle, phase: WorkflowPhase) -> PhaseOutcome:
        """Run one top-level phase with its record and events."""
        instance_id = handle.instance_id
        handle.current_index = phase.index
        self.store.update_instance(instance_id, current_phase=phase.index)
        self._emit(handle, EventKind.PHASE_STARTED, phase)
        record_id = self.store.append_phase_record(instance_id, phase.index, phase.id)

        try:
            outcome = await self._handlers[phase.type](handle, phase, False)
        except (WorkflowCancelled, asyncio.CancelledError):
            self.store.complete_phase_record(record_id, "cancelled")
            raise
        except ExecutionError as e:
            self.store.complete_phase_record(record_id, "failed", error=e.message)
            self._emit(handle, EventKind.PHASE_FAILED, phase, error=e.message, error_kind=e.kind)
            raise
        except Exception as e:
            self.store.complete_phase_record(record_id, "failed", error=str(e))
            self._emit(
                handle, EventKind.PHASE_FAILED, phase, error=str(e), error_kind="InternalError"
            )
            raise

        self.store.complete_phase_record(
            record_id,
            "completed",
            session_id=outcome.session_id,
            capability_id=outcome.capability_id,
            output=outcome.output,
        )
        handle.outputs.append(outcome.output)
        self._emit(handle, EventKind.PHASE_COMPLETED, phase, output=outcome.output)
        return outcome

    def _emit(
        self,
        handle: _InstanceHandle,
        kind: EventKind,
        phase: WorkflowPhase,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        self.events.publish(
            PhaseEvent(
                instance_id=handle.instance_id,
                kind=kind,
                phase_index=handle.current_index,
                phase_id=phase.id,
                phase_name=phase.name,
                output=output,
                error=error,
                error_kind=error_kind,
            )
        )

    async def _wait_or_stop(
        self, handle: _InstanceHandle, awaitable: "asyncio.Future[Any]"
    ) -> bool:
        """Wait for awaitable or the stop event. Returns True if awaitable finished."""
        stop_wait = asyncio.ensure_future(handle.stop.wait())
        try:
            await asyncio.wait({awaitable, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
        return awaitable.done()

    # =========================================================================
    # Phase handlers
    # =========================================================================

    async def _run_capability_phase(
        self, handle: _InstanceHandle, phase: WorkflowPhase, nested: bool
    ) -> PhaseOutcome:
        """planning / writing: invoke the phase's skill."""
        if not phase.skill:
            if self.strict_skills:
                raise PhaseInvocationFailed(
                    f"Phase '{phase.name}' ({phase.type.value}) has no skill assigned",
                    handle.current_index,
                )
            logger.info("Phase %s has no skill; completing as no-op", phase.name)
            return PhaseOutcome(output={"skipped": True, "reason": "No skill specified"})

        instruction = build_phase_instruction(phase, handle.context)
        session_id = self.invoker.new_session_id()
        handle.session_id = session_id
        if handle.stopping:
            self.invoker.abort(session_id)

        on_output = None
        if self.on_output is not None:
            callback, instance_id, index = self.on_output, handle.instance_id, handle.current_index

            def on_output(_session: str, text: str) -> None:
                callback(instance_id, index, text)

        try:
            result = await self.invoker.invoke(
                phase.skill,
                instruction,
                session_id=session_id,
                cwd=handle.context.project_folder,
                on_output=on_output,
            )
        finally:
            handle.session_id = None

        if result.aborted or handle.stopping:
            raise WorkflowCancelled()
        if not result.success:
            details = {
                "sessionId": result.session_id,
                "skill": phase.skill,
                "exitCode": result.exit_code,
            }
            if result.error_kind == "process":
                raise CapabilityProcessError(
                    result.error or "capability process failed", handle.current_index, details
                )
            raise PhaseInvocationFailed(
                result.error or "capability invocation failed", handle.current_index, details
            )

        return PhaseOutcome(
            output=result.output or {},
            session_id=result.session_id,
            capability_id=phase.skill,
        )

    async def _run_gate_phase(
        self, handle: _InstanceHandle, phase: WorkflowPhase, nested: bool
    ) -> PhaseOutcome:
        """gate: delegate evaluation, enforce the verdict."""
        request = GateRequest(
            instance_id=handle.instance_id,
            phase=phase,
            condition=phase.gate_condition,
            outputs=list(handle.outputs),
            variables=dict(handle.context.variables),
        )
        try:
            decision = self.gate_validator(request)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception as e:
            raise GateRejected(
                f"Gate '{phase.name}' validator error: {e}", handle.current_index
            ) from e
        if handle.stopping:
            raise WorkflowCancelled()

        output: Dict[str, Any] = {
            "passed": decision.passed,
            "reason": decision.reason,
            "condition": phase.gate_condition,
        }
        next_index = self._gate_redirect(handle, phase, decision.redirect_to, nested)
        if next_index is not None:
            output["redirectTo"] = next_index
            logger.info(
                "Gate %s redirected %s to phase %d", phase.name, handle.instance_id, next_index
            )
            return PhaseOutcome(output=output, next_index=next_index)

        if not decision.passed:
            raise GateRejected(
                f"Gate '{phase.name}' rejected: {decision.reason or phase.gate_condition}",
                handle.current_index,
                {"condition": phase.gate_condition, **decision.details},
            )
        return PhaseOutcome(output=output)

    def _gate_redirect(
        self, handle: _InstanceHandle, phase: WorkflowPhase, target: Optional[int], nested: bool
    ) -> Optional[int]:
        if target is None:
            return None
        if nested:
            logger.warning("Ignoring gate redirect inside loop phase %s", phase.name)
            return None
        if not handle.current_index < target < len(handle.definition.phases):
            logger.warning(
                "Ignoring gate redirect from phase %d to %d (only forward jumps allowed)",
                handle.current_index,
                target,
            )
            return None
        return target

    async def _run_user_phase(
        self, handle: _InstanceHandle, phase: WorkflowPhase, nested: bool
    ) -> PhaseOutcome:
        """user: suspend for approval when required."""
        if not phase.requires_approval:
            return PhaseOutcome(output={"approved": True, "approvalRequired": False})

        future: "asyncio.Future[Tuple[bool, Optional[str]]]" = handle.loop.create_future()
        handle.approval = future
        handle.approval_index = handle.current_index
        self.store.update_instance(handle.instance_id, status=InstanceStatus.WAITING_APPROVAL)
        logger.info(
            "Instance %s waiting for approval at phase %d",
            handle.instance_id,
            handle.current_index,
        )
        self._emit(handle, EventKind.APPROVAL_REQUIRED, phase)

        try:
            await self._wait_or_stop(handle, future)
        finally:
            handle.approval = None
            handle.approval_index = None
            if not future.done():
                future.cancel()

        if handle.stopping or future.cancelled():
            raise WorkflowCancelled()

        approved, reason = future.result()
        if not approved:
            raise GateRejected(
                f"Approval rejected for phase '{phase.name}'" + (f": {reason}" if reason else ""),
                handle.current_index,
                {"reason": reason},
            )
        self.store.update_instance(handle.instance_id, status=InstanceStatus.RUNNING)
        return PhaseOutcome(output={"approved": True})

    async def _run_subworkflow_phase(
        self, handle: _InstanceHandle, phase: WorkflowPhase, nested: bool
    ) -> PhaseOutcome:
        """subworkflow: run a child instance and await its terminal status."""
        target = phase.sub_workflow_id or ""
        if target in handle.ancestry:
            raise SubWorkflowFailed(
                f"Sub-workflow cycle: {' -> '.join(handle.ancestry + (target,))}",
                handle.current_index,
            )
        try:
            child_id = await self.start(
                target,
                handle.context.for_child(),
                parent_instance_id=handle.instance_id,
            )
        except DefinitionNotFound as e:
            raise SubWorkflowFailed(
                f"Sub-workflow '{target}' is not registered",
                handle.current_index,
                {"subWorkflowId": target},
            ) from e

        child = self._registry.get(child_id)
        if child is None or child.task is None:
            raise SubWorkflowFailed(f"Sub-workflow '{target}' did not start", handle.current_index)

        handle.children.add(child_id)
        try:
            finished = await self._wait_or_stop(handle, child.task)
            if not finished:
                self._request_stop(child)
                await asyncio.wait({child.task})
                raise WorkflowCancelled()
        except asyncio.CancelledError:
            self._request_stop(child)
            raise
        finally:
            handle.children.discard(child_id)

        instance = self.store.get_instance(child_id)
        if handle.stopping:
            raise WorkflowCancelled()
        if instance is None or instance.status != InstanceStatus.COMPLETED:
            status = instance.status.value if instance else "UNKNOWN"
            raise SubWorkflowFailed(
                f"Sub-workflow '{target}' ended {status}"
                + (f": {instance.error}" if instance and instance.error else ""),
                handle.current_index,
                {
                    "subWorkflowId": target,
                    "childInstanceId": child_id,
                    "childStatus": status,
                    "childErrorKind": instance.error_kind if instance else None,
                },
            )
        return PhaseOutcome(
            output={
                "subWorkflowId": target,
                "instanceId": child_id,
                "status": instance.status.value,
            }
        )

    async def _run_loop_phase(
        self, handle: _InstanceHandle, phase: WorkflowPhase, nested: bool
    ) -> PhaseOutcome:
        """loop: repeat the inner phases while the context predicate holds.

        Without a predicate the body runs maxIterations times (default 1).
        With one, maxIterations caps the loop; with neither bound set,
        reaching loop_max_iterations while the predicate holds fails.
        """
        predicate = handle.context.loop_predicate
        limit = phase.max_iterations or self.loop_max_iterations
        iterations = 0
        last_outputs: List[Dict[str, Any]] = []
        results: List[List[Dict[str, Any]]] = []

        while True:
            if handle.stopping:
                raise WorkflowCancelled()

            if predicate is None:
                if iterations >= (phase.max_iterations or 1):
                    break
            else:
                state = LoopState(
                    instance_id=handle.instance_id,
                    phase_index=handle.current_index,
                    phase_id=phase.id,
                    iteration=iterations,
                    last_outputs=list(last_outputs),
                    variables=handle.context.variables,
                )
                try:
                    keep_going = predicate(state)
                    if inspect.isawaitable(keep_going):
                        keep_going = await keep_going
                except Exception as e:
                    raise PhaseInvocationFailed(
                        f"Loop predicate for '{phase.name}' raised: {e}", handle.current_index
                    ) from e
                if not keep_going:
                    break
                if iterations >= limit:
                    if phase.max_iterations is not None:
                        break
                    raise PhaseInvocationFailed(
                        f"Loop '{phase.name}' exceeded {limit} iterations",
                        handle.current_index,
                        {"iterations": iterations},
                    )

            iteration_outputs: List[Dict[str, Any]] = []
            for inner in phase.loop_phases:
                if handle.stopping:
                    raise WorkflowCancelled()
                outcome = await self._handlers[inner.type](handle, inner, True)
                iteration_outputs.append(outcome.output)
                handle.outputs.append(outcome.output)
            iterations += 1
            last_outputs = iteration_outputs
            results.append(iteration_outputs)
            logger.debug("Loop %s iteration %d done", phase.name, iterations)

        return PhaseOutcome(output={"iterations": iterations, "results": results})
