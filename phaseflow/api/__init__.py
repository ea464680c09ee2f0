"""
phaseflow API - FastAPI REST API for workflow import and execution.

Endpoints:
    GET    /api/workflows                       - List definitions (latest versions)
    POST   /api/workflows/import                - Import a package folder
    GET    /api/workflows/{id}                  - Get definition (?version=)
    GET    /api/workflows/{id}/dependencies     - Dependency check
    GET    /api/workflows/{id}/export           - Export manifest (?format=yaml|json)
    GET    /api/workflows/{id}/imports          - Import audit trail

    POST   /api/instances                       - Start instance
    GET    /api/instances                       - List instances
    GET    /api/instances/{id}                  - Instance status + phase history
    GET    /api/instances/{id}/phases           - Phase execution records
    POST   /api/instances/{id}/approve          - Grant approval
    POST   /api/instances/{id}/reject           - Reject approval
    DELETE /api/instances/{id}                  - Cancel instance
    GET    /api/instances/{id}/events           - SSE event stream

    GET    /api/health                          - Health check
"""

from .server import create_app, get_service

__all__ = ["create_app", "get_service"]
