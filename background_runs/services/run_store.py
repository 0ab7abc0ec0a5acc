"""Run persistence with conditional (compare-and-swap) transitions."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from background_runs.errors import TransitionConflict, TransitionRejectedError
from background_runs.models.run import BackgroundRun
from background_runs.services.state_machine import PatchRequest, RunSnapshot, compute_transition

logger = logging.getLogger(__name__)

# Every column the state machine reads. An update only lands if all of them
# still hold the values the transition was validated against.
SNAPSHOT_COLUMNS = (
    "status",
    "progress",
    "attempt_count",
    "max_attempts",
    "retryable",
    "cancel_requested",
    "started_at",
    "finished_at",
    "next_retry_at",
    "last_heartbeat_at",
)

_read_retry = retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)


def parse_run_id(value: Any) -> Optional[uuid.UUID]:
    """UUID from a string or UUID; None when unparsable."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class RunFilters:
    """Optional narrowing applied to dispatcher and watchdog scans."""

    run_id: Optional[uuid.UUID] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def build(cls, run_id: Any = None, project_id: Optional[str] = None, user_id: Optional[str] = None) -> Optional["RunFilters"]:
        """Filters from raw request values; None when run_id is not a valid id."""
        if run_id is None or run_id == "":
            return cls(project_id=project_id, user_id=user_id)
        parsed = parse_run_id(run_id)
        if parsed is None:
            return None
        return cls(run_id=parsed, project_id=project_id, user_id=user_id)


class RunStore:
    """Reads runs and applies state machine transitions as conditional updates."""

    def __init__(self, db: Session):
        """Initialize store."""
        self.db = db

    def _filtered(self, status: str, filters: RunFilters):
        stmt = select(BackgroundRun).where(BackgroundRun.status == status)
        if filters.run_id is not None:
            stmt = stmt.where(BackgroundRun.id == filters.run_id)
        if filters.project_id:
            stmt = stmt.where(BackgroundRun.project_id == filters.project_id)
        if filters.user_id:
            stmt = stmt.where(BackgroundRun.user_id == filters.user_id)
        return stmt

    @_read_retry
    def select_queued(self, filters: RunFilters, limit: int) -> List[BackgroundRun]:
        """Queued runs, oldest first."""
        stmt = self._filtered("queued", filters).order_by(BackgroundRun.created_at.asc()).limit(limit)
        try:
            return list(self.db.execute(stmt).scalars().all())
        except OperationalError:
            self.db.rollback()
            raise

    @_read_retry
    def select_running(self, filters: RunFilters, limit: int) -> List[BackgroundRun]:
        """Running runs, earliest started first."""
        stmt = self._filtered("running", filters).order_by(BackgroundRun.started_at.asc()).limit(limit)
        try:
            return list(self.db.execute(stmt).scalars().all())
        except OperationalError:
            self.db.rollback()
            raise

    def refresh(self, run: BackgroundRun) -> BackgroundRun:
        """Reload a run from the store."""
        self.db.refresh(run)
        return run

    def apply_transition(
        self,
        run: BackgroundRun,
        request: PatchRequest,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> BackgroundRun:
        """
        Validate and persist one transition.

        Args:
            run: Run row as last read from the store
            request: Patch request with an explicit operation
            now: Transition timestamp
            extra: Additional column values written with the mutation

        Returns:
            The refreshed run

        Raises:
            TransitionRejectedError: If the state machine refuses the operation
            TransitionConflict: If the row changed since it was read
        """
        expected = {column: getattr(run, column) for column in SNAPSHOT_COLUMNS}
        result = compute_transition(RunSnapshot.from_run(run), request, now)
        if not result.ok:
            raise TransitionRejectedError(result.code, result.message)

        values = dict(result.mutation)
        if extra:
            values.update(extra)
        values["updated_at"] = now

        predicates = [BackgroundRun.id == run.id]
        for column, value in expected.items():
            attr = getattr(BackgroundRun, column)
            predicates.append(attr.is_(None) if value is None else attr == value)

        stmt = (
            update(BackgroundRun)
            .where(*predicates)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        try:
            updated = self.db.execute(stmt).rowcount
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        if updated != 1:
            logger.info(f"Run {run.id}: {result.operation} lost to a concurrent update")
            raise TransitionConflict(run.id, result.operation)

        self.db.refresh(run)
        logger.info(f"Run {run.id}: {result.operation} -> {run.status} (attempt {run.attempt_count}/{run.max_attempts})")
        return run
