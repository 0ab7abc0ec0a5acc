"""Watchdog that recovers runs abandoned mid-execution."""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from background_runs.errors import TransitionConflict, TransitionRejectedError
from background_runs.schemas.dispatch import (
    DEFAULT_WATCHDOG_SESSION,
    DispatchOutcome,
    RecoveryRequest,
    RecoveryResult,
)
from background_runs.services.backoff import retry_delay_seconds
from background_runs.services.dispatcher import OVERFETCH_FACTOR, normalize_limit
from background_runs.services.failures import ExecutionFailure, FailureKind, should_retry
from background_runs.services.run_store import RunFilters, RunStore
from background_runs.services.state_machine import PatchRequest
from background_runs.services.telemetry import TelemetryEmitter
from background_runs.services.timestamps import parse_timestamp, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 10 * 60
MIN_STALE_AFTER_SECONDS = 60
MAX_STALE_AFTER_SECONDS = 24 * 60 * 60
MAX_WATCHDOG_SCAN = 100

WATCHDOG_MESSAGE = "Run heartbeat timed out and was recovered by watchdog."

# Liveness signals, most recent kind first
SIGNAL_FIELDS = ("last_heartbeat_at", "started_at", "created_at")


def normalize_stale_after_seconds(value: Any) -> int:
    """Clamp a staleness threshold to [60, 86400]; missing or NaN means 600."""
    if value is None or isinstance(value, bool):
        return DEFAULT_STALE_AFTER_SECONDS
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_STALE_AFTER_SECONDS
    if math.isnan(seconds):
        return DEFAULT_STALE_AFTER_SECONDS
    return int(math.floor(min(max(seconds, MIN_STALE_AFTER_SECONDS), MAX_STALE_AFTER_SECONDS)))


def _signal(run: Any, name: str) -> Any:
    if isinstance(run, Mapping):
        return run.get(name)
    return getattr(run, name, None)


def last_signal_at(run: Any) -> Optional[datetime]:
    """First parsable of last_heartbeat_at, started_at, created_at."""
    for name in SIGNAL_FIELDS:
        parsed = parse_timestamp(_signal(run, name))
        if parsed is not None:
            return parsed
    return None


def is_heartbeat_stale(
    run: Any,
    now: Optional[datetime] = None,
    stale_after_seconds: Optional[float] = None,
) -> bool:
    """
    Whether a running run has gone quiet for too long.

    Args:
        run: ORM row or mapping with last_heartbeat_at/started_at/created_at
        now: Reference time (defaults to the current time)
        stale_after_seconds: Threshold, clamped to [60, 86400], default 600

    Returns:
        True if the last liveness signal is at least the threshold old.
        A run without any parsable signal is never stale.
    """
    reference = to_naive_utc(now) if now is not None else utcnow()
    threshold = normalize_stale_after_seconds(stale_after_seconds)

    last_signal = last_signal_at(run)
    if last_signal is None:
        return False

    return (reference - last_signal).total_seconds() >= threshold


class Watchdog:
    """Fails (and possibly requeues) running runs whose heartbeat went stale."""

    def __init__(self, db: Session, telemetry: TelemetryEmitter, clock: Callable[[], datetime] = utcnow):
        """Initialize watchdog."""
        self.store = RunStore(db)
        self.telemetry = telemetry
        self.clock = clock

    def recover_stale_running(self, request: Optional[RecoveryRequest] = None) -> RecoveryResult:
        """Scan running runs and recover the stale ones."""
        request = request or RecoveryRequest()
        stale_after = normalize_stale_after_seconds(request.stale_after_seconds)
        limit = normalize_limit(request.limit)
        session_id = request.telemetry_session_id or DEFAULT_WATCHDOG_SESSION

        filters = RunFilters.build(request.run_id, request.project_id, request.user_id)
        if filters is None:
            return RecoveryResult(scanned=0, stale=0, recovered=0, retried=0, failed=0, outcomes=[])

        running = self.store.select_running(filters, min(limit * OVERFETCH_FACTOR, MAX_WATCHDOG_SCAN))

        now = self.clock()
        stale_runs = [run for run in running if is_heartbeat_stale(run, now=now, stale_after_seconds=stale_after)][:limit]

        outcomes = []
        retried = 0
        failed = 0

        for run in stale_runs:
            # Rows reload after each commit; a heartbeat since the scan spares the run
            if not is_heartbeat_stale(run, now=self.clock(), stale_after_seconds=stale_after):
                logger.info(f"Watchdog skipped run {run.id}: heartbeat received since scan")
                continue
            try:
                run = self.store.apply_transition(
                    run,
                    PatchRequest(
                        operation="fail",
                        error_message=WATCHDOG_MESSAGE,
                        output={"error": WATCHDOG_MESSAGE, "watchdog": True},
                    ),
                    self.clock(),
                )
            except (TransitionConflict, TransitionRejectedError) as e:
                # Another actor moved the run; nothing to recover.
                logger.info(f"Watchdog skipped run {run.id}: {e}")
                continue

            self.telemetry.emit(run, session_id, "watchdog_marked_failed", {"staleAfterSeconds": stale_after})

            # A pending cancel turns the timeout into a final failure
            kind = FailureKind.PERMANENT if run.cancel_requested else FailureKind.TRANSIENT
            failure = ExecutionFailure(kind=kind, message=WATCHDOG_MESSAGE)

            if not should_retry(run, failure):
                self.telemetry.emit(run, session_id, "watchdog_terminal_failure", {"staleAfterSeconds": stale_after})
                outcomes.append(DispatchOutcome.from_run(run, error=WATCHDOG_MESSAGE))
                failed += 1
                continue

            delay = retry_delay_seconds(run.attempt_count)
            try:
                run = self.store.apply_transition(
                    run, PatchRequest(operation="retry", retry_after_seconds=delay), self.clock()
                )
            except (TransitionConflict, TransitionRejectedError) as e:
                logger.warning(f"Watchdog failed run {run.id} but could not requeue it: {e}")
                self.store.refresh(run)
                outcomes.append(DispatchOutcome.from_run(run, error=WATCHDOG_MESSAGE))
                failed += 1
                continue

            self.telemetry.emit(
                run,
                session_id,
                "watchdog_retried",
                {"staleAfterSeconds": stale_after, "retryAfterSeconds": delay},
            )
            outcomes.append(DispatchOutcome.from_run(run, retried=True, error=WATCHDOG_MESSAGE))
            retried += 1

        if stale_runs:
            logger.warning(
                f"Watchdog recovered {len(outcomes)} of {len(stale_runs)} stale run(s) "
                f"({retried} requeued, {failed} failed)"
            )

        return RecoveryResult(
            scanned=len(running),
            stale=len(stale_runs),
            recovered=len(outcomes),
            retried=retried,
            failed=failed,
            outcomes=outcomes,
        )
