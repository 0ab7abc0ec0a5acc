"""Classification of executor failures into permanent and transient."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from background_runs.errors import PermanentRunError


class FailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class ExecutionFailure:
    """An executor failure, tagged once so retry decisions are a plain match."""

    kind: FailureKind
    message: str

    @property
    def permanent(self) -> bool:
        return self.kind is FailureKind.PERMANENT


def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    code = getattr(exc, "status_code", None)
    return code if isinstance(code, int) else None


def classify_failure(exc: BaseException, cancel_requested: bool = False) -> ExecutionFailure:
    """
    Tag an executor exception.

    Permanent: PermanentRunError, any downstream 4xx, or a run whose cancel
    was requested while it executed. Everything else is transient.
    """
    message = str(exc) or "Background run execution failed."

    if cancel_requested:
        return ExecutionFailure(kind=FailureKind.PERMANENT, message=message)

    if isinstance(exc, PermanentRunError):
        return ExecutionFailure(kind=FailureKind.PERMANENT, message=message)

    status_code = _status_code(exc)
    if status_code is not None and 400 <= status_code < 500:
        return ExecutionFailure(kind=FailureKind.PERMANENT, message=message)

    return ExecutionFailure(kind=FailureKind.TRANSIENT, message=message)


def should_retry(run: Any, failure: ExecutionFailure) -> bool:
    """A failed run goes back to the queue only for transient failures with attempts left."""
    if failure.permanent:
        return False
    return bool(run.retryable) and run.attempt_count < run.max_attempts
