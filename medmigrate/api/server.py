"""
medmigrate REST API Server

Provides REST API endpoints for creating migration runs from uploaded
exports, reviewing and approving drafted mappings, and reading the
resulting reconciliation reports.

Base URL: /api/v1
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.mapping_spec import parse_mapping_spec
from medmigrate.canonical.schema import describe_canonical_schema
from medmigrate.canonical.transforms import ALLOWED_TRANSFORMS
from medmigrate.core.config import get_settings
from medmigrate.core.errors import MigrationError, RunNotFoundError
from medmigrate.core.metrics import setup_metrics
from medmigrate.pipeline.destination import InMemoryDestination
from medmigrate.pipeline.ingest import UploadedFile
from medmigrate.pipeline.orchestrator import (
    MigrationOrchestrator,
    RunStatus,
    publish_run_events,
)
from medmigrate.storage.artifact_store import LocalArtifactStore

logger = structlog.get_logger(__name__)

API_VERSION = "1.0.0"
ALLOWED_EXTENSIONS = {".csv", ".json"}

# =============================================================================
# Application Setup
# =============================================================================

app = FastAPI(
    title="medmigrate API",
    description="PHI-safe, AI-assisted clinical data migration",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_metrics(app)


# =============================================================================
# Request/Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str


class CreateRunResponse(BaseModel):
    """Response from run creation."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    status: RunStatus
    status_url: str = Field(..., alias="statusUrl")


class ApproveRequest(BaseModel):
    """Approval of the drafted mapping, optionally with an edited spec."""
    model_config = ConfigDict(populate_by_name=True)

    approved_by: str = Field(..., alias="approvedBy", min_length=1)
    mapping_spec: dict[str, Any] | None = Field(default=None, alias="mappingSpec")


# =============================================================================
# Orchestrator
# =============================================================================

_orchestrator: MigrationOrchestrator | None = None


def get_orchestrator() -> MigrationOrchestrator:
    """Dependency to get the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = MigrationOrchestrator(
            store=LocalArtifactStore(),
            destination=InMemoryDestination(),
        )
    return _orchestrator


# =============================================================================
# Background Tasks
# =============================================================================


async def process_approved_run(run_id: str, orchestrator: MigrationOrchestrator) -> None:
    """Background task running transform through reconcile."""
    # Phases block on LLM calls and artifact I/O
    await run_in_threadpool(orchestrator.run_from_approval, run_id)
    run = orchestrator.get_run(run_id)
    logger.info("run_processed", run_id=run_id, status=run.status.value)

    redis_url = get_settings().redis_url
    if redis_url:
        await publish_run_events(run, redis_url)


# =============================================================================
# API Endpoints
# =============================================================================


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.post("/api/v1/runs", response_model=CreateRunResponse, tags=["Runs"])
async def create_run(
    vendor: str = Form(...),
    files: list[UploadFile] = File(...),
    existing_services: str = Form(default="[]"),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> CreateRunResponse:
    """
    Upload CSV/JSON exports and run ingest, profile and mapping draft.

    The run stops at the approval gate.
    """
    uploads = []
    for file in files:
        name = file.filename or ""
        extension = os.path.splitext(name)[1].lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported file type: {extension or name}. Allowed: {sorted(ALLOWED_EXTENSIONS)}",
            )
        uploads.append(UploadedFile(key=name, data=await file.read()))

    try:
        services = json.loads(existing_services)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="existing_services must be a JSON list")

    run = orchestrator.create_run(
        vendor,
        uploaded_files=uploads,
        existing_services=services or None,
    )
    await run_in_threadpool(orchestrator.run_to_approval, run.run_id)

    return CreateRunResponse(
        runId=run.run_id,
        status=run.status,
        statusUrl=f"/api/v1/runs/{run.run_id}",
    )


@app.get("/api/v1/runs/{run_id}", tags=["Runs"])
async def get_run(
    run_id: str,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Run status, phase outcomes and the current mapping spec."""
    return orchestrator.get_run(run_id).summary()


@app.post("/api/v1/runs/{run_id}/approve", tags=["Runs"])
async def approve_run(
    run_id: str,
    request: ApproveRequest,
    background_tasks: BackgroundTasks,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Approve the drafted (or an edited) mapping and continue the run."""
    run = orchestrator.get_run(run_id)
    if run.status != RunStatus.AWAITING_APPROVAL:
        raise HTTPException(
            status_code=409,
            detail=f"Run {run_id} is {run.status.value}, not awaiting approval",
        )

    spec = parse_mapping_spec(request.mapping_spec) if request.mapping_spec is not None else None
    run = orchestrator.approve_mapping(run_id, request.approved_by, spec)

    background_tasks.add_task(process_approved_run, run_id, orchestrator)

    return {
        "status": "accepted",
        "runId": run_id,
        "approvedVersion": run.approved_version,
        "statusUrl": f"/api/v1/runs/{run_id}",
    }


@app.get("/api/v1/runs/{run_id}/report", tags=["Runs"])
async def get_report(
    run_id: str,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Reconciliation report of a finished run."""
    run = orchestrator.get_run(run_id)
    if run.report is None:
        raise HTTPException(status_code=404, detail="Report not available")
    return run.report.model_dump(by_alias=True, mode="json")


@app.get("/api/v1/transforms", tags=["Reference"])
async def list_transforms() -> dict[str, Any]:
    """Allowlisted transform names."""
    return {"transforms": sorted(ALLOWED_TRANSFORMS), "count": len(ALLOWED_TRANSFORMS)}


@app.get("/api/v1/canonical-schema", tags=["Reference"])
async def canonical_schema() -> dict[str, Any]:
    """Canonical entity descriptions."""
    entities = describe_canonical_schema()
    return {"entities": entities, "count": len(entities)}


# =============================================================================
# Error Handlers
# =============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(RunNotFoundError)
async def run_not_found_handler(request, exc: RunNotFoundError):
    """Handle unknown run IDs."""
    return JSONResponse(
        status_code=404,
        content={
            "error": str(exc),
            "status_code": 404,
        },
    )


@app.exception_handler(MigrationError)
async def migration_error_handler(request, exc: MigrationError):
    """Handle pipeline errors raised by request handling."""
    logger.warning("request_rejected", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=400,
        content={
            "error": str(exc),
            "status_code": 400,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "status_code": 500,
        },
    )


# =============================================================================
# CLI Entry Point
# =============================================================================


def main() -> None:
    """Run the API server."""
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    reload = os.environ.get("RELOAD", "false").lower() == "true"

    # Runs are held in process memory, so a single worker serves them all
    uvicorn.run(
        "medmigrate.api.server:app",
        host=host,
        port=port,
        workers=1,
        reload=reload,
    )


if __name__ == "__main__":
    main()
