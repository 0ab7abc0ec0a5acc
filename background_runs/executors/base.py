"""Executor contract, run context and registry."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol, Type

from pydantic import BaseModel, ValidationError

from background_runs.errors import PermanentRunError, TransitionConflict, TransitionRejectedError
from background_runs.models.run import BackgroundRun
from background_runs.services.run_store import RunStore
from background_runs.services.state_machine import PatchRequest

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Run was cancelled on request."


class RunContext:
    """What an executor sees of the run it is executing.

    Besides the input, the context lets a long-running executor send
    heartbeats, report progress and observe cooperative cancellation.
    """

    def __init__(self, run: BackgroundRun, store: RunStore, clock: Callable[[], datetime]):
        """Initialize context."""
        self._run = run
        self._store = store
        self._clock = clock
        self.run_id = str(run.id)
        self.run_type = run.run_type
        self.attempt = run.attempt_count
        self.input: Dict[str, Any] = dict(run.input or {})

    def _apply(self, request: PatchRequest) -> bool:
        try:
            self._store.refresh(self._run)
            self._store.apply_transition(self._run, request, self._clock())
            return True
        except (TransitionConflict, TransitionRejectedError) as e:
            logger.warning(f"Run {self.run_id}: {request.operation} ignored ({e})")
            return False

    def heartbeat(self) -> bool:
        """Record a liveness signal. Returns False if the run is no longer running."""
        return self._apply(PatchRequest(operation="heartbeat"))

    def report_progress(self, progress: int) -> bool:
        """Store a completion percentage (0-100)."""
        return self._apply(PatchRequest(operation="progress", progress=progress))

    def cancel_requested(self) -> bool:
        """Whether someone asked for this run to be cancelled."""
        self._store.refresh(self._run)
        return bool(self._run.cancel_requested)

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested():
            raise PermanentRunError(CANCELLED_MESSAGE)


class RunExecutor(Protocol):
    """Executes one run and returns its output, or raises."""

    def execute(self, context: RunContext) -> Dict[str, Any]:
        """Run the domain work for a run."""


class BaseExecutor:
    """Base class for executors with input validation."""

    run_type: str = ""
    input_model: Optional[Type[BaseModel]] = None

    def execute(self, context: RunContext) -> Dict[str, Any]:
        """
        Validate the run input and execute.

        Args:
            context: Run context

        Returns:
            Output dict stored on the run

        Raises:
            PermanentRunError: If the input can never be executed
        """
        payload = self._parse_input(context.input)
        return self._run(context, payload)

    def _parse_input(self, raw: Dict[str, Any]) -> Any:
        if self.input_model is None:
            return raw
        try:
            return self.input_model.model_validate(raw)
        except ValidationError as e:
            raise PermanentRunError(f"Invalid {self.run_type or 'run'} payload in run input.") from e

    def _run(self, context: RunContext, payload: Any) -> Dict[str, Any]:
        """Executor logic (to be implemented by subclasses)."""
        raise NotImplementedError


class ExecutorRegistry:
    """Maps run types to executors."""

    def __init__(self, executors: Optional[Dict[str, RunExecutor]] = None):
        """Initialize registry."""
        self._executors: Dict[str, RunExecutor] = dict(executors or {})

    def register(self, run_type: str, executor: RunExecutor) -> None:
        self._executors[run_type] = executor

    def resolve(self, run_type: str) -> RunExecutor:
        """Executor for a run type; unknown types can never succeed."""
        executor = self._executors.get(run_type)
        if executor is None:
            raise PermanentRunError(f"Unsupported run_type: {run_type}")
        return executor

    def __contains__(self, run_type: str) -> bool:
        return run_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)
