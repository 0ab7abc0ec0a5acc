"""Dispatcher for queued background runs."""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from background_runs.errors import DispatchConfigError, TransitionConflict, TransitionRejectedError
from background_runs.executors.base import ExecutorRegistry, RunContext
from background_runs.models.run import BackgroundRun
from background_runs.schemas.dispatch import (
    DEFAULT_DISPATCH_SESSION,
    DispatchOutcome,
    DispatchRequest,
    DispatchResult,
)
from background_runs.services.backoff import retry_delay_seconds
from background_runs.services.failures import ExecutionFailure, FailureKind, classify_failure, should_retry
from background_runs.services.run_store import RunFilters, RunStore
from background_runs.services.state_machine import PatchRequest
from background_runs.services.telemetry import TelemetryEmitter
from background_runs.services.timestamps import utcnow

logger = logging.getLogger(__name__)

MIN_BATCH_LIMIT = 1
MAX_BATCH_LIMIT = 20
OVERFETCH_FACTOR = 5
MAX_DISPATCH_SCAN = 50
START_PROGRESS = 10


def normalize_limit(limit: Any) -> int:
    """Clamp a requested batch size to [1, 20]; missing or NaN means 1."""
    if limit is None or isinstance(limit, bool):
        return MIN_BATCH_LIMIT
    try:
        value = float(limit)
    except (TypeError, ValueError):
        return MIN_BATCH_LIMIT
    if math.isnan(value):
        return MIN_BATCH_LIMIT
    return int(math.floor(min(max(value, MIN_BATCH_LIMIT), MAX_BATCH_LIMIT)))


class Dispatcher:
    """Claims due queued runs and drives each through execution.

    Runs within one call are processed sequentially, oldest first. Every
    state change goes through the state machine and lands as a conditional
    update, so concurrent dispatchers and the watchdog never double-apply.
    """

    def __init__(
        self,
        db: Session,
        executors: ExecutorRegistry,
        telemetry: TelemetryEmitter,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize dispatcher.

        Raises:
            DispatchConfigError: If no executor is registered
        """
        if not executors:
            raise DispatchConfigError("No run executors are configured. Set WEBHOOK_EXECUTOR_URL.")
        self.store = RunStore(db)
        self.executors = executors
        self.telemetry = telemetry
        self.clock = clock

    def dispatch_queued(self, request: Optional[DispatchRequest] = None) -> DispatchResult:
        """
        Dispatch due queued runs.

        Args:
            request: Optional filters, batch limit and telemetry session

        Returns:
            Number of runs processed and one outcome per run
        """
        request = request or DispatchRequest()
        limit = normalize_limit(request.limit)
        session_id = request.telemetry_session_id or DEFAULT_DISPATCH_SESSION

        filters = RunFilters.build(request.run_id, request.project_id, request.user_id)
        if filters is None:
            logger.warning(f"Ignoring dispatch for malformed run id {request.run_id!r}")
            return DispatchResult(processed=0, outcomes=[])

        queued = self.store.select_queued(filters, min(limit * OVERFETCH_FACTOR, MAX_DISPATCH_SCAN))

        now = self.clock()
        due = [run for run in queued if run.next_retry_at is None or run.next_retry_at <= now][:limit]

        if not due:
            return DispatchResult(processed=0, outcomes=[])

        logger.info(f"Dispatching {len(due)} of {len(queued)} queued run(s)")

        outcomes = []
        for run in due:
            outcome = self._process_run(run, session_id)
            if outcome is not None:
                outcomes.append(outcome)

        return DispatchResult(processed=len(outcomes), outcomes=outcomes)

    def _process_run(self, run: BackgroundRun, session_id: str) -> Optional[DispatchOutcome]:
        """Start, execute and finalize one run."""
        try:
            run = self.store.apply_transition(
                run, PatchRequest(operation="start", progress=START_PROGRESS), self.clock()
            )
        except TransitionConflict:
            logger.info(f"Run {run.id} was claimed concurrently, skipping")
            return None
        except TransitionRejectedError as e:
            if run.status != "queued":
                logger.info(f"Run {run.id} is already {run.status}, skipping")
                return None
            # Still queued but unstartable (attempts exhausted or a pending cancel)
            failure = ExecutionFailure(kind=FailureKind.PERMANENT, message=f"Transition failed: {e.message}")
            return self._fail(run, failure, session_id, attempt=None)

        self.telemetry.emit(run, session_id, "started")
        attempt = run.attempt_count

        try:
            executor = self.executors.resolve(run.run_type)
            output = executor.execute(RunContext(run, self.store, self.clock))
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.error(f"Run {run.id} attempt {attempt} failed: {e}", exc_info=True)
            self.store.refresh(run)
            failure = classify_failure(e, cancel_requested=bool(run.cancel_requested))
            return self._fail(run, failure, session_id, attempt=attempt)

        if output is None:
            output = {}
        elif not isinstance(output, dict):
            output = {"result": output}

        return self._complete(run, output, session_id, attempt)

    def _still_running(self, run: BackgroundRun, attempt: int) -> bool:
        """Refresh and check no other actor finished or requeued this attempt."""
        self.store.refresh(run)
        return run.status == "running" and run.attempt_count == attempt

    def _complete(self, run: BackgroundRun, output: dict, session_id: str, attempt: int) -> DispatchOutcome:
        if not self._still_running(run, attempt):
            logger.warning(f"Run {run.id} moved to {run.status} during execution; result discarded")
            return DispatchOutcome.from_run(run)

        try:
            run = self.store.apply_transition(run, PatchRequest(operation="complete", output=output), self.clock())
        except (TransitionConflict, TransitionRejectedError) as e:
            logger.warning(f"Run {run.id} result discarded: {e}")
            self.store.refresh(run)
            return DispatchOutcome.from_run(run)

        self.telemetry.emit(run, session_id, "succeeded")
        return DispatchOutcome.from_run(run)

    def _fail(
        self,
        run: BackgroundRun,
        failure: ExecutionFailure,
        session_id: str,
        attempt: Optional[int],
    ) -> DispatchOutcome:
        """Mark a run failed, then requeue it with backoff when eligible."""
        if attempt is not None and not self._still_running(run, attempt):
            logger.warning(f"Run {run.id} moved to {run.status} during execution; failure discarded")
            return DispatchOutcome.from_run(run, error=failure.message)

        try:
            run = self.store.apply_transition(
                run,
                PatchRequest(
                    operation="fail",
                    error_message=failure.message,
                    output={"error": failure.message},
                ),
                self.clock(),
            )
        except (TransitionConflict, TransitionRejectedError) as e:
            logger.warning(f"Run {run.id} could not be marked failed: {e}")
            self.store.refresh(run)
            return DispatchOutcome.from_run(run, error=failure.message)

        self.telemetry.emit(
            run,
            session_id,
            "failed",
            {"permanent": failure.permanent, "errorMessage": failure.message},
        )

        if not should_retry(run, failure):
            logger.warning(
                f"Run {run.id} failed terminally after {run.attempt_count}/{run.max_attempts} attempt(s): {failure.message}"
            )
            return DispatchOutcome.from_run(run, error=failure.message)

        delay = retry_delay_seconds(run.attempt_count)
        try:
            run = self.store.apply_transition(
                run, PatchRequest(operation="retry", retry_after_seconds=delay), self.clock()
            )
        except (TransitionConflict, TransitionRejectedError) as e:
            logger.warning(f"Run {run.id} retry not scheduled: {e}")
            self.store.refresh(run)
            return DispatchOutcome.from_run(run, error=failure.message)

        self.telemetry.emit(
            run,
            session_id,
            "retry_scheduled",
            {"retryAfterSeconds": delay, "previousError": failure.message},
        )
        logger.info(f"Run {run.id} retry {run.attempt_count + 1}/{run.max_attempts} scheduled in {delay}s")
        return DispatchOutcome.from_run(run, retried=True, error=failure.message)
