"""
Instance control endpoints for the phaseflow API.

Provides REST endpoints for:
- Starting instances
- Getting instance status and phase history
- Granting or rejecting approvals
- Cancelling instances
- Streaming phase events (SSE)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...runtime.errors import DefinitionNotFound
from ...runtime.service import WorkflowService
from ...runtime.types import ExecutionContext, InstanceId
from .events import format_sse_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/instances", tags=["instances"])


# =============================================================================
# Pydantic Models
# =============================================================================


class ContextModel(BaseModel):
    """Caller-supplied execution context."""

    owner_id: Optional[str] = None
    project_id: Optional[str] = None
    project_folder: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class StartRequest(BaseModel):
    """Request to start a new instance."""

    definition_id: str = Field(..., description="Definition to execute")
    version: Optional[str] = Field(None, description="Exact version (default: latest import)")
    start_phase_index: int = Field(0, ge=0, description="Phase index to start from")
    context: Optional[ContextModel] = Field(None, description="Execution context")


class StartResponse(BaseModel):
    """Response when starting a new instance."""

    instance_id: str
    definition_id: str
    version: str
    status: str
    events_url: str


class ApprovalRequest(BaseModel):
    """Grant or reject the approval an instance is waiting on."""

    phase_index: int = Field(..., ge=0)
    reason: Optional[str] = Field(None, description="Rejection reason")


class ActionResponse(BaseModel):
    instance_id: str
    status: str
    message: str


# =============================================================================
# Helpers
# =============================================================================


def _service(request: Request) -> WorkflowService:
    return request.app.state.service


def _require_instance(service: WorkflowService, instance_id: InstanceId):
    instance = service.get_instance(instance_id)
    if instance is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "not_found", "message": f"Instance '{instance_id}' not found"},
        )
    return instance


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=StartResponse, status_code=201)
async def start_instance(request: Request, body: StartRequest) -> StartResponse:
    """Start an instance; returns before any phase has run."""
    service = _service(request)
    ctx = body.context or ContextModel()
    context = ExecutionContext(
        owner_id=ctx.owner_id,
        project_id=ctx.project_id,
        project_folder=ctx.project_folder,
        variables=dict(ctx.variables),
    )
    try:
        instance_id = await service.start(
            body.definition_id,
            context,
            version=body.version,
            start_phase_index=body.start_phase_index,
        )
    except DefinitionNotFound as e:
        raise HTTPException(
            status_code=404,
            detail={"error": e.kind, "message": e.message, "details": e.details},
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "message": str(e)})

    instance = service.get_instance(instance_id)
    return StartResponse(
        instance_id=instance_id,
        definition_id=instance.definition_id,
        version=instance.version,
        status=instance.status.value,
        events_url=f"/api/instances/{instance_id}/events",
    )


@router.get("")
async def list_instances(
    request: Request,
    definition_id: Optional[str] = Query(None),
) -> Dict[str, Any]:
    service = _service(request)
    return {"instances": [i.to_dict() for i in service.list_instances(definition_id)]}


@router.get("/{instance_id}")
async def get_instance(request: Request, instance_id: str) -> Dict[str, Any]:
    """Instance status with pending approval and phase history."""
    service = _service(request)
    instance = _require_instance(service, instance_id)
    data = instance.to_dict()
    data["pendingApproval"] = service.engine.pending_approval(instance_id)
    data["phases"] = [r.to_dict() for r in service.get_phase_records(instance_id)]
    return data


@router.get("/{instance_id}/phases")
async def get_phase_records(request: Request, instance_id: str) -> Dict[str, List[Dict[str, Any]]]:
    service = _service(request)
    _require_instance(service, instance_id)
    return {"phases": [r.to_dict() for r in service.get_phase_records(instance_id)]}


@router.post("/{instance_id}/approve", response_model=ActionResponse)
async def approve(request: Request, instance_id: str, body: ApprovalRequest) -> ActionResponse:
    service = _service(request)
    instance = _require_instance(service, instance_id)
    if not service.grant_approval(instance_id, body.phase_index):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "not_waiting",
                "message": f"Instance is not waiting for approval at phase {body.phase_index}",
                "details": {"status": instance.status.value},
            },
        )
    return ActionResponse(
        instance_id=instance_id, status=instance.status.value, message="Approval granted"
    )


@router.post("/{instance_id}/reject", response_model=ActionResponse)
async def reject(request: Request, instance_id: str, body: ApprovalRequest) -> ActionResponse:
    service = _service(request)
    instance = _require_instance(service, instance_id)
    if not service.reject_approval(instance_id, body.phase_index, body.reason):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "not_waiting",
                "message": f"Instance is not waiting for approval at phase {body.phase_index}",
                "details": {"status": instance.status.value},
            },
        )
    return ActionResponse(
        instance_id=instance_id, status=instance.status.value, message="Approval rejected"
    )


@router.delete("/{instance_id}", response_model=ActionResponse)
async def cancel_instance(request: Request, instance_id: str) -> ActionResponse:
    service = _service(request)
    instance = _require_instance(service, instance_id)
    if not service.cancel(instance_id):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "not_running",
                "message": f"Instance '{instance_id}' is already {instance.status.value}",
            },
        )
    return ActionResponse(
        instance_id=instance_id, status=instance.status.value, message="Cancellation requested"
    )


# =============================================================================
# SSE
# =============================================================================


async def generate_instance_events(
    service: WorkflowService,
    instance_id: InstanceId,
    since_seq: int = 0,
    poll_interval: float = 0.5,
    heartbeat_interval: float = 15.0,
) -> AsyncGenerator[str, None]:
    """Yield SSE events for one instance until it reaches a terminal status."""
    queue, subscription = service.events.open_queue(instance_id, since_seq)
    last_heartbeat = datetime.now(timezone.utc)
    try:
        yield format_sse_event("connected", {"instance_id": instance_id})
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                status = service.store.get_instance_status(instance_id)
                if status is None or status.is_terminal:
                    while not queue.empty():
                        event = queue.get_nowait()
                        yield format_sse_event(
                            event.kind.value, event.to_dict(), event_id=str(event.seq)
                        )
                    yield format_sse_event(
                        "done",
                        {"instance_id": instance_id, "status": status.value if status else None},
                    )
                    break
                now = datetime.now(timezone.utc)
                if (now - last_heartbeat).total_seconds() >= heartbeat_interval:
                    last_heartbeat = now
                    yield format_sse_event("heartbeat", {"instance_id": instance_id})
                continue
            yield format_sse_event(event.kind.value, event.to_dict(), event_id=str(event.seq))
    finally:
        subscription.unsubscribe()


@router.get("/{instance_id}/events")
async def stream_events(
    request: Request,
    instance_id: str,
    since: int = Query(0, ge=0, description="Replay events with seq greater than this"),
) -> StreamingResponse:
    """Stream phase and approval events as Server-Sent Events."""
    service = _service(request)
    _require_instance(service, instance_id)
    return StreamingResponse(
        generate_instance_events(service, instance_id, since_seq=since),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
