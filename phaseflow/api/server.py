"""
FastAPI REST API server for phaseflow.

Exposes workflow import, definition queries and instance control to the
presentation layer, plus an SSE stream of phase and approval events.

Usage:
    # Run standalone
    python -m phaseflow.api.server

    # Or via factory
    from phaseflow.api import create_app
    app = create_app()
    uvicorn.run(app, port=5002)

API Structure:
    /api/workflows/               - Definitions, import, export, dependency check
    /api/instances/               - Start, status, approve/reject, cancel
    /api/instances/{id}/events    - SSE streaming
    /api/health                   - Health check
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..runtime.service import WorkflowService
from .routes import instances_router, workflows_router

logger = logging.getLogger(__name__)


def get_service(request: Request) -> WorkflowService:
    """WorkflowService bound to the running app."""
    return request.app.state.service


def create_app(
    service: Optional[WorkflowService] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service to expose. Defaults to one built from runtime settings.
        enable_cors: Whether to enable CORS middleware.

    Returns:
        Configured FastAPI application.
    """
    owns_service = service is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Cancel running instances on shutdown and close the store if owned."""
        logger.info("phaseflow API server starting...")
        yield
        logger.info("phaseflow API server shutting down...")
        await app.state.service.engine.shutdown()
        if owns_service:
            app.state.service.close()

    app = FastAPI(
        title="phaseflow API",
        description="Workflow import and phased execution",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service or WorkflowService()

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(workflows_router, prefix="/api")
    app.include_router(instances_router, prefix="/api")

    @app.get("/api/health")
    async def health(request: Request) -> Dict[str, Any]:
        svc = get_service(request)
        return {
            "status": "ok",
            "version": "1.0.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "running_instances": len(svc.engine.running_instances()),
        }

    return app


def main():
    """Run the API server."""
    import argparse

    import uvicorn

    from ..config.runtime_config import get_log_level

    parser = argparse.ArgumentParser(description="phaseflow API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5002, help="Port to bind to")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    args = parser.parse_args()

    logging.basicConfig(level=get_log_level())
    print(f"Starting phaseflow API server at http://{args.host}:{args.port}")
    uvicorn.run(create_app(enable_cors=not args.no_cors), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
