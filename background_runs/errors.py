"""Exception types shared by the dispatcher, watchdog and HTTP layer."""

from dataclasses import dataclass
from typing import Optional


class PermanentRunError(Exception):
    """Raised by executors for failures that retrying cannot fix."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DispatchConfigError(Exception):
    """Raised when executors or worker credentials are not configured."""


class TransitionConflict(Exception):
    """A conditional update matched zero rows; a concurrent actor won the race."""

    def __init__(self, run_id, operation: str):
        super().__init__(f"Run {run_id} changed concurrently; {operation} was discarded")
        self.run_id = run_id
        self.operation = operation


@dataclass
class TransitionRejectedError(Exception):
    """A transition the state machine refused, raised by store-level helpers."""

    code: str
    message: str

    def __str__(self) -> str:
        return self.message
