"""Dispatcher, watchdog and worker cycle schemas."""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from background_runs.services.timestamps import isoformat

DEFAULT_DISPATCH_SESSION = "background-runs-dispatch"
DEFAULT_WATCHDOG_SESSION = "background-runs-watchdog"


class DispatchRequest(BaseModel):
    """Which queued runs to dispatch."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: Optional[str] = Field(default=None, alias="runId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    limit: Optional[float] = None
    telemetry_session_id: Optional[str] = Field(default=None, alias="telemetrySessionId")


class RecoveryRequest(BaseModel):
    """Which running runs the watchdog inspects."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: Optional[str] = Field(default=None, alias="runId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    stale_after_seconds: Optional[float] = Field(default=None, alias="staleAfterSeconds")
    limit: Optional[float] = None
    telemetry_session_id: Optional[str] = Field(default=None, alias="telemetrySessionId")


class DispatchOutcome(BaseModel):
    """Where one run ended up after a dispatcher or watchdog pass."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    status: str
    retried: bool
    attempt_count: int = Field(alias="attemptCount")
    progress: int
    output: Optional[Dict[str, Any]] = None
    next_retry_at: Optional[str] = Field(default=None, alias="nextRetryAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    finished_at: Optional[str] = Field(default=None, alias="finishedAt")
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: Any, retried: bool = False, error: Optional[str] = None) -> "DispatchOutcome":
        return cls(
            run_id=str(run.id),
            status=run.status,
            retried=retried,
            attempt_count=run.attempt_count,
            progress=run.progress,
            output=run.output,
            next_retry_at=isoformat(run.next_retry_at),
            started_at=isoformat(run.started_at),
            finished_at=isoformat(run.finished_at),
            error=error,
        )


class DispatchResult(BaseModel):
    processed: int
    outcomes: List[DispatchOutcome]


class RecoveryResult(BaseModel):
    scanned: int
    stale: int
    recovered: int
    retried: int
    failed: int
    outcomes: List[DispatchOutcome]


class WorkerCycleRequest(BaseModel):
    """One scheduler tick: watchdog pass then batched dispatch."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: Optional[uuid.UUID] = Field(default=None, alias="runId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    limit: int = Field(default=20, ge=1, le=100)
    batch_size: int = Field(default=5, ge=1, le=10, alias="batchSize")
    max_batches: int = Field(default=6, ge=1, le=20, alias="maxBatches")
    stale_after_seconds: int = Field(default=600, ge=60, le=86400, alias="staleAfterSeconds")


class WatchdogSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timeout_seconds: int = Field(alias="timeoutSeconds")
    scanned: int
    stale: int
    recovered: int
    retried: int
    failed: int


class WorkerCycleResult(BaseModel):
    processed: int
    batches: int
    watchdog: WatchdogSummary
    outcomes: List[DispatchOutcome]
