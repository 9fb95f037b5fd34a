"""FastAPI control surface for the workgraph engine."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .. import __version__
from ..auditors import AuditorRegistry
from ..errors import (
    AuditorError,
    EscalationRequired,
    InvalidTransition,
    NotFound,
    RecoveryDiscontinuity,
    ValidationError,
    VerificationCancelled,
    WorkgraphError,
)
from ..orchestrator import Orchestrator
from .routes import create_governance_router, create_schedule_router, create_task_router


def _status_for(exc: WorkgraphError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (InvalidTransition, EscalationRequired, RecoveryDiscontinuity, VerificationCancelled)):
        return 409
    if isinstance(exc, AuditorError):
        return 502
    return 500


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    registry: Optional[AuditorRegistry] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.
        registry: Auditor registry shared by every project served.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="workgraph",
        description="Dependency-aware task orchestration with verified completion and checkpoints",
        version=__version__,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.orchestrators = {}
    lock = threading.Lock()

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        if project_dir_param:
            return Path(project_dir_param).expanduser().resolve()
        if app.state.default_project_dir:
            return Path(app.state.default_project_dir).resolve()
        return Path.cwd().resolve()

    def get_orchestrator(project_dir_param: Optional[str] = None) -> Orchestrator:
        path = _get_project_dir(project_dir_param)
        with lock:
            orch = app.state.orchestrators.get(path)
            if orch is None:
                orch = Orchestrator(path, registry=registry)
                app.state.orchestrators[path] = orch
        return orch

    @app.exception_handler(WorkgraphError)
    async def _workgraph_error(request: Request, exc: WorkgraphError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "workgraph", "version": __version__, "status": "running"}

    app.include_router(create_task_router(get_orchestrator))
    app.include_router(create_schedule_router(get_orchestrator))
    app.include_router(create_governance_router(get_orchestrator))
    return app
