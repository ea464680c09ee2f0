"""
Route modules for the phaseflow API.

Routers:
    workflows_router  - /workflows  definitions, import, export, dependencies
    instances_router  - /instances  start, status, approvals, cancel, SSE
"""

from .instances import router as instances_router
from .workflows import router as workflows_router

__all__ = [
    "instances_router",
    "workflows_router",
]
