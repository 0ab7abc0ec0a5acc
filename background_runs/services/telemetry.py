"""Best-effort telemetry for run transitions.

Events are handed to a sink through `TelemetryEmitter`. Emitting never raises
and, in background mode, never waits on the sink: events are queued and a
daemon thread records them. A slow or failing sink cannot delay or fail a
state transition.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from background_runs.models.event import ProductEvent
from background_runs.services.timestamps import isoformat, utcnow

logger = logging.getLogger(__name__)

EVENT_PREFIX = "background_run."
FLUSH_POLL_SECONDS = 0.01


@dataclass(frozen=True)
class TelemetryEvent:
    run_id: str
    session_id: str
    event_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    project_id: Optional[str] = None


class TelemetrySink(Protocol):
    """Destination for telemetry events."""

    def record(self, event: TelemetryEvent) -> None:
        """Persist or forward one event."""


class NullTelemetrySink:
    def record(self, event: TelemetryEvent) -> None:
        return None


class LoggingTelemetrySink:
    """Writes events to the application log."""

    def record(self, event: TelemetryEvent) -> None:
        logger.info(f"[telemetry] {event.event_name} run={event.run_id} session={event.session_id} {event.metadata}")


class DatabaseTelemetrySink:
    """Inserts events into the product_events table using its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize sink."""
        self.session_factory = session_factory

    def record(self, event: TelemetryEvent) -> None:
        db = self.session_factory()
        try:
            db.add(
                ProductEvent(
                    user_id=event.user_id or "",
                    project_id=event.project_id,
                    event_name=event.event_name,
                    session_id=event.session_id,
                    event_data={"runId": event.run_id, **event.metadata},
                    occurred_at=event.occurred_at,
                )
            )
            db.commit()
        finally:
            db.close()


class HttpTelemetrySink:
    """POSTs events as JSON to a collector endpoint."""

    def __init__(self, url: str, timeout: float = 5.0):
        """Initialize sink."""
        self.url = url
        self.timeout = timeout

    def record(self, event: TelemetryEvent) -> None:
        payload = {
            "runId": event.run_id,
            "sessionId": event.session_id,
            "eventName": event.event_name,
            "metadata": event.metadata,
            "occurredAt": isoformat(event.occurred_at),
            "userId": event.user_id,
            "projectId": event.project_id,
        }
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=payload)
            response.raise_for_status()


class RecordingTelemetrySink:
    """Keeps events in memory. Used by tests and local debugging."""

    def __init__(self):
        """Initialize sink."""
        self.events: List[TelemetryEvent] = []

    def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> List[str]:
        return [e.event_name for e in self.events]


def run_summary(run: Any) -> Dict[str, Any]:
    """Fields every run event carries."""
    return {
        "runId": str(run.id),
        "runType": run.run_type,
        "status": run.status,
        "attemptCount": run.attempt_count,
        "maxAttempts": run.max_attempts,
        "retryable": run.retryable,
        "progress": run.progress,
    }


class TelemetryEmitter:
    """Fire-and-forget front for a telemetry sink."""

    def __init__(self, sink: TelemetrySink, background: bool = True, queue_size: int = 1000):
        """
        Initialize emitter.

        Args:
            sink: Where events end up
            background: Record on a daemon thread instead of inline
            queue_size: Pending events kept before new ones are dropped
        """
        self.sink = sink
        self.background = background
        self._queue: "queue.Queue[Optional[TelemetryEvent]]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def emit(self, run: Any, session_id: str, event_name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an event about a run. Never raises."""
        try:
            event = TelemetryEvent(
                run_id=str(run.id),
                session_id=session_id,
                event_name=f"{EVENT_PREFIX}{event_name}",
                metadata={**run_summary(run), **(metadata or {})},
                user_id=run.user_id,
                project_id=run.project_id,
            )
        except Exception as e:
            logger.warning(f"Telemetry event {event_name} could not be built: {e}")
            return

        if not self.background:
            self._record(event)
            return

        self._ensure_thread()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Telemetry queue full, dropping {event.event_name} for run {event.run_id}")

    def _record(self, event: TelemetryEvent) -> None:
        try:
            self.sink.record(event)
        except Exception as e:
            logger.warning(f"Telemetry sink failed for {event.event_name} (run {event.run_id}): {e}")

    def _ensure_thread(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._drain, name="telemetry-emitter", daemon=True)
            self._thread.start()

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._record(event)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued events are recorded. Returns False on timeout."""
        if not self.background:
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(FLUSH_POLL_SECONDS)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Drain pending events and stop the background thread."""
        if self._thread is None:
            return
        self.flush(timeout)
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            return
        self._thread.join(timeout=timeout)
        self._thread = None


def build_telemetry_sink(settings, session_factory: Optional[Callable[[], Session]] = None) -> TelemetrySink:
    """Select a sink from TELEMETRY_SINK."""
    kind = (settings.TELEMETRY_SINK or "none").strip().lower()
    if kind == "database":
        if session_factory is None:
            from background_runs.database import SessionLocal

            session_factory = SessionLocal
        return DatabaseTelemetrySink(session_factory)
    if kind == "http":
        if not settings.TELEMETRY_WEBHOOK_URL:
            logger.warning("TELEMETRY_SINK=http but TELEMETRY_WEBHOOK_URL is empty; telemetry disabled")
            return NullTelemetrySink()
        return HttpTelemetrySink(settings.TELEMETRY_WEBHOOK_URL)
    if kind == "log":
        return LoggingTelemetrySink()
    return NullTelemetrySink()


def build_telemetry_emitter(settings, session_factory: Optional[Callable[[], Session]] = None) -> TelemetryEmitter:
    return TelemetryEmitter(
        build_telemetry_sink(settings, session_factory),
        background=True,
        queue_size=settings.TELEMETRY_QUEUE_SIZE,
    )
