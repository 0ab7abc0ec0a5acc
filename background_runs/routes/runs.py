"""Background run routes."""

import logging
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from background_runs.config import Settings
from background_runs.database import get_db
from background_runs.dependencies import get_executors, get_settings, get_telemetry, get_user_id, require_user
from background_runs.errors import DispatchConfigError, TransitionConflict, TransitionRejectedError
from background_runs.executors.base import ExecutorRegistry
from background_runs.schemas.dispatch import DispatchRequest, WorkerCycleRequest
from background_runs.schemas.run import RunCreate, RunEnvelope, RunListResponse, RunPatch, RunResponse
from background_runs.services.dispatcher import Dispatcher
from background_runs.services.runs import RunService
from background_runs.services.telemetry import TelemetryEmitter
from background_runs.services.timestamps import isoformat, utcnow
from background_runs.services.worker_auth import authorize_worker_request
from background_runs.worker import run_worker_cycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/background-runs", tags=["background-runs"])

RUN_STATUSES = ("queued", "running", "succeeded", "failed", "cancelled")


class DispatchBody(BaseModel):
    """Body of POST /background-runs/dispatch."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: Optional[uuid.UUID] = Field(default=None, alias="runId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    limit: int = Field(default=1, ge=1, le=10)


def error_envelope(code: str, message: str, status_code: int, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "retryable": retryable}},
    )


def _session_id(prefix: str) -> str:
    return f"{prefix}:{int(time.time() * 1000)}"


@router.post("", status_code=201)
def create_run(
    data: RunCreate,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Create a new run, or return the existing one for a repeated idempotency key."""
    run, deduplicated = RunService(db).create_run(user_id, data)
    envelope = RunEnvelope(deduplicated=deduplicated, run=RunResponse.model_validate(run))
    return JSONResponse(
        status_code=200 if deduplicated else 201,
        content=envelope.model_dump(mode="json"),
    )


@router.get("", response_model=RunListResponse)
def list_runs(
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    status: Optional[str] = None,
    limit: Optional[str] = None,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    """List the caller's runs, newest first."""
    try:
        parsed_limit = int(limit) if limit else None
    except ValueError:
        parsed_limit = None

    runs = RunService(db).list_runs(
        project_id=project_id,
        status=status if status in RUN_STATUSES else None,
        user_id=user_id,
        limit=parsed_limit,
    )
    return RunListResponse(runs=[RunResponse.model_validate(r) for r in runs])


@router.post("/dispatch")
def dispatch_runs(
    request: Request,
    body: Optional[DispatchBody] = Body(default=None),
    user_id: Optional[str] = Depends(get_user_id),
    settings: Settings = Depends(get_settings),
    executors: ExecutorRegistry = Depends(get_executors),
    telemetry: TelemetryEmitter = Depends(get_telemetry),
    db: Session = Depends(get_db),
):
    """Dispatch due queued runs, as a worker (all runs) or as a user (own runs)."""
    authorization = authorize_worker_request(request.headers, settings)
    if not authorization.ok and not user_id:
        return error_envelope("UNAUTHORIZED", "Unauthorized. Please log in.", 401)

    body = body or DispatchBody()
    try:
        dispatcher = Dispatcher(db, executors, telemetry)
        result = dispatcher.dispatch_queued(
            DispatchRequest(
                run_id=str(body.run_id) if body.run_id else None,
                project_id=body.project_id,
                user_id=None if authorization.ok else user_id,
                limit=body.limit,
                telemetry_session_id=_session_id("worker-dispatch" if authorization.ok else "user-dispatch"),
            )
        )
    except DispatchConfigError as e:
        logger.error(f"Dispatch misconfigured: {e}")
        return error_envelope("WORKER_CONFIG_INVALID", str(e), 500)
    except SQLAlchemyError as e:
        logger.error(f"Dispatch failed: {e}", exc_info=True)
        return error_envelope("BACKGROUND_RUNS_DISPATCH_FAILED", "Failed to dispatch background runs.", 500, retryable=True)

    return {
        "success": True,
        "processed": result.processed,
        "outcomes": [o.model_dump(by_alias=True) for o in result.outcomes],
    }


async def _worker_params(request: Request) -> Dict[str, Any]:
    if request.method == "GET":
        return {key: value for key, value in request.query_params.items() if value}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@router.api_route("/worker", methods=["GET", "POST"])
async def run_worker(
    request: Request,
    settings: Settings = Depends(get_settings),
    executors: ExecutorRegistry = Depends(get_executors),
    telemetry: TelemetryEmitter = Depends(get_telemetry),
    db: Session = Depends(get_db),
):
    """Worker entry point for cron: watchdog pass, then batched dispatch."""
    authorization = authorize_worker_request(request.headers, settings)
    if not authorization.ok:
        logger.warning(f"Rejected worker request: {authorization.error}")
        return JSONResponse(status_code=401, content={"error": authorization.error})

    try:
        cycle_request = WorkerCycleRequest.model_validate(await _worker_params(request))
    except ValidationError as e:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": e.errors(include_context=False, include_url=False)},
        )

    try:
        result = await run_in_threadpool(
            run_worker_cycle,
            db,
            executors,
            telemetry,
            cycle_request,
            _session_id("worker"),
        )
    except (DispatchConfigError, SQLAlchemyError) as e:
        logger.error(f"Worker cycle failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(e) or "Failed to dispatch worker runs."})

    return {
        "success": True,
        "processed": result.processed,
        "batches": result.batches,
        "auth": authorization.method,
        "watchdog": result.watchdog.model_dump(by_alias=True),
        "outcomes": [o.model_dump(by_alias=True) for o in result.outcomes],
        "checkedAt": isoformat(utcnow()),
    }


@router.get("/{run_id}", response_model=RunEnvelope)
def get_run(
    run_id: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Get one of the caller's runs."""
    run = RunService(db).get_run(run_id, user_id=user_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found.")
    return RunEnvelope(run=RunResponse.model_validate(run))


@router.patch("/{run_id}", response_model=RunEnvelope)
def update_run(
    run_id: str,
    data: RunPatch,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Apply a lifecycle operation (or legacy status change) to a run."""
    service = RunService(db)
    run = service.get_run(run_id, user_id=user_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found.")

    try:
        run = service.apply_patch(run, data)
    except TransitionRejectedError as e:
        status_code = 400 if e.code == "invalid_payload" else 409
        return JSONResponse(status_code=status_code, content={"error": e.message, "code": e.code})
    except TransitionConflict as e:
        return JSONResponse(status_code=409, content={"error": str(e), "code": "conflict"})

    return RunEnvelope(run=RunResponse.model_validate(run))
