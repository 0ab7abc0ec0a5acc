"""Background run state machine.

`compute_transition` is a pure function: given a run snapshot, a patch
request and the current time it returns either the mutation to apply or a
typed rejection. It never touches the store; callers apply the mutation as a
conditional update (see `run_store.RunStore.apply_transition`).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

RunStatus = Literal["queued", "running", "succeeded", "failed", "cancelled"]
Operation = Literal[
    "start",
    "progress",
    "complete",
    "fail",
    "request-cancel",
    "cancel",
    "retry",
    "heartbeat",
]
RejectionCode = Literal["invalid_payload", "invalid_transition", "max_attempts_reached", "not_retryable"]

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "cancelled"})

DEFAULT_FAIL_MESSAGE = "Run failed"

# Legacy clients send a target status instead of an operation.
LEGACY_STATUS_OPERATIONS: Dict[str, str] = {
    "running": "start",
    "succeeded": "complete",
    "failed": "fail",
    "cancelled": "cancel",
    "queued": "retry",
}


@dataclass(frozen=True)
class RunSnapshot:
    """The persisted fields a transition is validated against."""

    status: str
    progress: int = 0
    attempt_count: int = 0
    max_attempts: int = 3
    retryable: bool = True
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: Any) -> "RunSnapshot":
        """Build a snapshot from an ORM row, tolerating unset columns."""
        return cls(
            status=run.status,
            progress=run.progress if run.progress is not None else 0,
            attempt_count=run.attempt_count if run.attempt_count is not None else 0,
            max_attempts=run.max_attempts if run.max_attempts is not None else 3,
            retryable=run.retryable is not False,
            cancel_requested=bool(run.cancel_requested),
            started_at=run.started_at,
            finished_at=run.finished_at,
            next_retry_at=run.next_retry_at,
            last_heartbeat_at=run.last_heartbeat_at,
        )


class PatchRequest(BaseModel):
    """A requested change to a run. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    operation: Optional[Operation] = None
    status: Optional[RunStatus] = None  # legacy compatibility
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    retry_after_seconds: Optional[int] = Field(default=None, alias="retryAfterSeconds")

    @property
    def has_output(self) -> bool:
        """True when `output` was supplied, even as an explicit null."""
        return "output" in self.model_fields_set


@dataclass(frozen=True)
class TransitionAccepted:
    operation: str
    mutation: Dict[str, Any] = field(default_factory=dict)
    ok: bool = True


@dataclass(frozen=True)
class TransitionRejected:
    code: str
    message: str
    ok: bool = False


TransitionResult = Union[TransitionAccepted, TransitionRejected]


def derive_operation(request: PatchRequest) -> Optional[str]:
    """Map a legacy status/progress-only payload to an operation."""
    if request.operation:
        return request.operation
    if request.status is not None:
        return LEGACY_STATUS_OPERATIONS.get(request.status)
    if request.progress is not None:
        return "progress"
    return None


def with_derived_operation(request: PatchRequest) -> PatchRequest:
    """Return a copy of the request with its operation filled in when derivable."""
    if request.operation:
        return request
    operation = derive_operation(request)
    if operation is None:
        return request
    return request.model_copy(update={"operation": operation})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def _output_mutation(request: PatchRequest) -> Dict[str, Any]:
    return {"output": request.output} if request.has_output else {}


def _not_allowed(operation: str, allowed: str, status: str) -> TransitionRejected:
    return TransitionRejected(
        code="invalid_transition",
        message=f"{operation} is only allowed from {allowed}. Current status: {status}.",
    )


def compute_transition(current: RunSnapshot, request: PatchRequest, now: datetime) -> TransitionResult:
    """
    Validate a requested operation against the current run state.

    Args:
        current: Snapshot of the persisted run
        request: Patch request carrying an explicit operation
        now: Timestamp used for every time field in the mutation

    Returns:
        TransitionAccepted with the mutation to apply, or TransitionRejected
    """
    operation = request.operation
    if not operation:
        return TransitionRejected(
            code="invalid_payload",
            message="No valid operation could be derived from update payload.",
        )

    status = current.status

    # Only a failed run may leave a terminal state, and only via retry.
    if is_terminal(status) and operation != "retry":
        return TransitionRejected(
            code="invalid_transition",
            message=f"Run is already {status} and cannot transition via {operation}.",
        )

    if operation == "start":
        if status != "queued":
            return _not_allowed("start", "queued", status)
        if current.cancel_requested:
            return TransitionRejected(
                code="invalid_transition",
                message="Run has a pending cancel request and cannot be started.",
            )
        if current.attempt_count >= current.max_attempts:
            return TransitionRejected(
                code="max_attempts_reached",
                message="Run reached max attempts and cannot be started again.",
            )
        progress = request.progress if request.progress is not None else max(1, current.progress)
        return TransitionAccepted(
            operation=operation,
            mutation={
                "status": "running",
                "started_at": now,
                "finished_at": None,
                "next_retry_at": None,
                "attempt_count": current.attempt_count + 1,
                "progress": progress,
            },
        )

    if operation == "progress":
        if status != "running":
            return _not_allowed("progress", "running", status)
        if request.progress is None:
            return TransitionRejected(
                code="invalid_payload",
                message="progress operation requires progress value.",
            )
        return TransitionAccepted(operation=operation, mutation={"progress": request.progress})

    if operation == "complete":
        if status != "running":
            return _not_allowed("complete", "running", status)
        return TransitionAccepted(
            operation=operation,
            mutation={
                "status": "succeeded",
                "progress": 100,
                "finished_at": now,
                "error_message": None,
                "next_retry_at": None,
                **_output_mutation(request),
            },
        )

    if operation == "fail":
        if status not in ("running", "queued"):
            return _not_allowed("fail", "queued or running", status)
        return TransitionAccepted(
            operation=operation,
            mutation={
                "status": "failed",
                "finished_at": now,
                "next_retry_at": None,
                "error_message": request.error_message if request.error_message is not None else DEFAULT_FAIL_MESSAGE,
                **_output_mutation(request),
            },
        )

    if operation == "request-cancel":
        if status not in ("queued", "running"):
            return _not_allowed("request-cancel", "queued or running", status)
        if status == "queued":
            # Nothing has executed yet, so the cancel is final immediately.
            return TransitionAccepted(
                operation=operation,
                mutation={
                    "status": "cancelled",
                    "cancel_requested": True,
                    "finished_at": now,
                    "next_retry_at": None,
                },
            )
        return TransitionAccepted(operation=operation, mutation={"cancel_requested": True})

    if operation == "cancel":
        if status not in ("queued", "running", "failed"):
            return _not_allowed("cancel", "queued, running, or failed", status)
        return TransitionAccepted(
            operation=operation,
            mutation={
                "status": "cancelled",
                "cancel_requested": True,
                "finished_at": now,
                "next_retry_at": None,
            },
        )

    if operation == "retry":
        if status != "failed":
            return _not_allowed("retry", "failed", status)
        if not current.retryable:
            return TransitionRejected(code="not_retryable", message="Run is not retryable.")
        if current.attempt_count >= current.max_attempts:
            return TransitionRejected(
                code="max_attempts_reached",
                message="Run reached max attempts and cannot be retried.",
            )
        retry_after = max(0, request.retry_after_seconds or 0)
        return TransitionAccepted(
            operation=operation,
            mutation={
                "status": "queued",
                "progress": 0,
                "started_at": None,
                "finished_at": None,
                "error_message": None,
                "cancel_requested": False,
                "next_retry_at": now + timedelta(seconds=retry_after),
            },
        )

    if operation == "heartbeat":
        if status != "running":
            return _not_allowed("heartbeat", "running", status)
        return TransitionAccepted(operation=operation, mutation={"last_heartbeat_at": now})

    return TransitionRejected(code="invalid_payload", message=f"Unknown operation: {operation}.")
