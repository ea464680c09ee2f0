"""
Workflow definition endpoints for the phaseflow API.

Provides REST endpoints for:
- Listing and fetching definitions
- Importing workflow packages
- Exporting definitions as manifests
- Checking declared dependencies
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ...runtime.errors import DefinitionNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])


# =============================================================================
# Pydantic Models
# =============================================================================


class WorkflowSummary(BaseModel):
    """Definition summary for list endpoint."""

    id: str
    version: str
    name: str
    description: str = ""
    phase_count: int
    tags: List[str] = []
    is_system: bool = False


class WorkflowListResponse(BaseModel):
    """Response for list workflows endpoint."""

    workflows: List[WorkflowSummary]


class ImportRequest(BaseModel):
    """Request to import a workflow package folder."""

    package_path: str = Field(..., description="Filesystem path of the package folder")


# =============================================================================
# Helpers
# =============================================================================


def _not_found(e: DefinitionNotFound) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"error": e.kind, "message": e.message, "details": e.details},
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(
    request: Request,
    tag: Optional[str] = Query(None, description="Only definitions with this tag"),
    search: Optional[str] = Query(None, description="Substring of name or description"),
) -> WorkflowListResponse:
    """List the latest version of every definition."""
    service = request.app.state.service
    return WorkflowListResponse(
        workflows=[
            WorkflowSummary(
                id=d.id,
                version=d.version,
                name=d.name,
                description=d.description,
                phase_count=len(d.phases),
                tags=d.tags,
                is_system=d.is_system,
            )
            for d in service.list_definitions(tag=tag, search=search)
        ]
    )


@router.post("/import")
async def import_workflow(request: Request, body: ImportRequest) -> Dict[str, Any]:
    """Import a workflow package folder.

    Returns the import result. A failed import responds 400 with the result
    in ``detail.details``.
    """
    service = request.app.state.service
    result = service.import_package(Path(body.package_path))
    if not result.success:
        raise HTTPException(
            status_code=400,
            detail={
                "error": result.error_kind,
                "message": result.message,
                "details": result.to_dict(),
            },
        )
    return result.to_dict()


@router.get("/{definition_id}")
async def get_workflow(
    request: Request,
    definition_id: str,
    version: Optional[str] = Query(None, description="Exact version (default: latest import)"),
) -> Dict[str, Any]:
    service = request.app.state.service
    try:
        definition = service.get_definition(definition_id, version)
    except DefinitionNotFound as e:
        raise _not_found(e)
    data = definition.to_dict()
    data["versions"] = service.store.list_versions(definition_id)
    return data


@router.get("/{definition_id}/dependencies")
async def check_dependencies(
    request: Request,
    definition_id: str,
    version: Optional[str] = Query(None),
) -> Dict[str, Any]:
    """Installed/missing report for a stored definition's dependencies."""
    service = request.app.state.service
    try:
        report = service.check_dependencies(definition_id, version)
    except DefinitionNotFound as e:
        raise _not_found(e)
    return {"definitionId": definition_id, "allInstalled": report.all_installed, **report.to_dict()}


@router.get("/{definition_id}/export", response_class=PlainTextResponse)
async def export_workflow(
    request: Request,
    definition_id: str,
    version: Optional[str] = Query(None),
    format: str = Query("yaml", pattern="^(yaml|json)$"),
) -> PlainTextResponse:
    """Export a definition as a re-importable manifest."""
    service = request.app.state.service
    try:
        text = service.export_definition(definition_id, version, format)
    except DefinitionNotFound as e:
        raise _not_found(e)
    media_type = "application/json" if format == "json" else "application/x-yaml"
    return PlainTextResponse(text, media_type=media_type)


@router.get("/{definition_id}/imports")
async def list_imports(request: Request, definition_id: str) -> Dict[str, Any]:
    """Import audit trail for a definition id."""
    service = request.app.state.service
    return {
        "definitionId": definition_id,
        "imports": [r.to_dict() for r in service.store.list_imports(definition_id)],
    }
