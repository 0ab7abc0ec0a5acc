"""Worker cycle and polling scheduler for background runs."""

import logging
import threading
import time
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from background_runs.config import settings
from background_runs.database import SessionLocal
from background_runs.executors.base import ExecutorRegistry
from background_runs.executors.webhook import build_default_registry
from background_runs.schemas.dispatch import (
    DispatchOutcome,
    DispatchRequest,
    RecoveryRequest,
    WatchdogSummary,
    WorkerCycleRequest,
    WorkerCycleResult,
)
from background_runs.services.dispatcher import Dispatcher
from background_runs.services.telemetry import TelemetryEmitter, build_telemetry_emitter
from background_runs.services.watchdog import Watchdog

logger = logging.getLogger(__name__)

MAX_WATCHDOG_LIMIT = 20


def run_worker_cycle(
    db: Session,
    executors: ExecutorRegistry,
    telemetry: TelemetryEmitter,
    request: Optional[WorkerCycleRequest] = None,
    telemetry_session_id: Optional[str] = None,
) -> WorkerCycleResult:
    """
    One worker tick: recover stale runs, then dispatch queued runs in batches.

    Args:
        db: Database session
        executors: Executor registry
        telemetry: Telemetry emitter
        request: Cycle bounds (limit, batch size, max batches, staleness)
        telemetry_session_id: Session id stamped on every event of this cycle

    Returns:
        Totals, watchdog summary and every dispatch outcome
    """
    request = request or WorkerCycleRequest()
    session_id = telemetry_session_id or f"worker:{int(time.time() * 1000)}"
    run_id = str(request.run_id) if request.run_id else None

    watchdog = Watchdog(db, telemetry).recover_stale_running(
        RecoveryRequest(
            run_id=run_id,
            project_id=request.project_id,
            stale_after_seconds=request.stale_after_seconds,
            limit=min(request.limit, MAX_WATCHDOG_LIMIT),
            telemetry_session_id=session_id,
        )
    )

    dispatcher = Dispatcher(db, executors, telemetry)
    outcomes: List[DispatchOutcome] = []
    processed = 0
    batches = 0
    next_run_id = run_id

    while processed < request.limit and batches < request.max_batches:
        batch_limit = min(request.batch_size, request.limit - processed)
        result = dispatcher.dispatch_queued(
            DispatchRequest(
                run_id=next_run_id,
                project_id=request.project_id,
                limit=batch_limit,
                telemetry_session_id=session_id,
            )
        )

        batches += 1
        processed += result.processed
        outcomes.extend(result.outcomes)

        # A run id targets one run; later batches dispatch anything due
        next_run_id = None

        if result.processed < batch_limit:
            break

    if processed or watchdog.recovered:
        logger.info(
            f"Worker cycle: {processed} run(s) dispatched in {batches} batch(es), "
            f"{watchdog.recovered} stale run(s) recovered"
        )

    return WorkerCycleResult(
        processed=processed,
        batches=batches,
        watchdog=WatchdogSummary(
            timeout_seconds=request.stale_after_seconds,
            scanned=watchdog.scanned,
            stale=watchdog.stale,
            recovered=watchdog.recovered,
            retried=watchdog.retried,
            failed=watchdog.failed,
        ),
        outcomes=outcomes,
    )


class Scheduler:
    """Polling loop that runs one worker cycle per interval.

    Holds no run state between cycles; every cycle re-reads the store, so
    any number of schedulers (or HTTP-triggered cycles) can run side by side.
    """

    def __init__(
        self,
        executors: Optional[ExecutorRegistry] = None,
        telemetry: Optional[TelemetryEmitter] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        poll_interval: Optional[float] = None,
        request: Optional[WorkerCycleRequest] = None,
    ):
        """Initialize scheduler."""
        self.executors = executors if executors is not None else build_default_registry(settings)
        self.telemetry = telemetry if telemetry is not None else build_telemetry_emitter(settings)
        self.session_factory = session_factory
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL
        self.request = request or WorkerCycleRequest(
            limit=settings.WORKER_LIMIT,
            batch_size=settings.WORKER_BATCH_SIZE,
            max_batches=settings.WORKER_MAX_BATCHES,
            stale_after_seconds=settings.STALE_AFTER_SECONDS,
        )

    def run_once(self) -> WorkerCycleResult:
        """Run a single cycle with a fresh session."""
        db = self.session_factory()
        try:
            return run_worker_cycle(db, self.executors, self.telemetry, self.request)
        finally:
            db.close()

    def run(self, stop_event: Optional[threading.Event] = None):
        """Main scheduler loop.

        Args:
            stop_event: Optional threading.Event to signal the loop to stop
        """
        stop_event = stop_event or threading.Event()
        logger.info(f"Scheduler started (poll interval {self.poll_interval}s)")

        while not stop_event.is_set():
            try:
                self.run_once()
            except KeyboardInterrupt:
                logger.info("Scheduler shutting down")
                break
            except Exception as e:
                logger.error(f"Worker cycle error: {e}", exc_info=True)

            stop_event.wait(self.poll_interval)

        logger.info("Scheduler stopped")
        self.telemetry.close()


def scheduler_loop(stop_event: Optional[threading.Event] = None):
    """Run the scheduler (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal the scheduler to stop
    """
    Scheduler().run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        Scheduler().run()
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
