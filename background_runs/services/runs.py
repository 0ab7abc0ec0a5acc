"""Caller-facing run operations: create, list, fetch and patch."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from background_runs.errors import TransitionRejectedError
from background_runs.models.run import BackgroundRun
from background_runs.schemas.run import RunCreate
from background_runs.services.run_store import RunStore, parse_run_id
from background_runs.services.state_machine import PatchRequest, with_derived_operation
from background_runs.services.timestamps import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


class RunService:
    """Run operations on behalf of an (externally authenticated) user."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        """Initialize service."""
        self.db = db
        self.store = RunStore(db)
        self.clock = clock

    def _find_by_idempotency_key(self, user_id: str, data: RunCreate) -> Optional[BackgroundRun]:
        stmt = select(BackgroundRun).where(
            BackgroundRun.project_id == data.project_id,
            BackgroundRun.user_id == user_id,
            BackgroundRun.run_type == data.run_type,
            BackgroundRun.idempotency_key == data.idempotency_key,
        )
        return self.db.execute(stmt).scalars().first()

    def create_run(self, user_id: str, data: RunCreate) -> Tuple[BackgroundRun, bool]:
        """
        Enqueue a new run.

        Args:
            user_id: Owner of the run
            data: Run definition

        Returns:
            (run, deduplicated) - deduplicated is True when an existing run
            with the same idempotency key was returned instead
        """
        if data.idempotency_key:
            existing = self._find_by_idempotency_key(user_id, data)
            if existing is not None:
                logger.info(f"Run {existing.id} reused for idempotency key {data.idempotency_key}")
                return existing, True

        now = self.clock()
        run = BackgroundRun(
            project_id=data.project_id,
            user_id=user_id,
            run_type=data.run_type,
            status="queued",
            progress=0,
            input=data.input,
            run_metadata=data.metadata,
            idempotency_key=data.idempotency_key,
            max_attempts=data.max_attempts,
            retryable=data.retryable,
            attempt_count=0,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(run)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost an insert race on the idempotency index
            self.db.rollback()
            if data.idempotency_key:
                existing = self._find_by_idempotency_key(user_id, data)
                if existing is not None:
                    return existing, True
            raise

        self.db.refresh(run)
        logger.info(f"Created run {run.id} ({run.run_type}) for project {run.project_id}")
        return run, False

    def list_runs(
        self,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = DEFAULT_LIST_LIMIT,
    ) -> List[BackgroundRun]:
        """Runs newest first, optionally filtered."""
        if limit is None:
            limit = DEFAULT_LIST_LIMIT
        limit = min(max(limit, 1), MAX_LIST_LIMIT)

        stmt = select(BackgroundRun).order_by(BackgroundRun.created_at.desc())
        if project_id:
            stmt = stmt.where(BackgroundRun.project_id == project_id)
        if status:
            stmt = stmt.where(BackgroundRun.status == status)
        if user_id:
            stmt = stmt.where(BackgroundRun.user_id == user_id)

        return list(self.db.execute(stmt.limit(limit)).scalars().all())

    def get_run(self, run_id: Any, user_id: Optional[str] = None) -> Optional[BackgroundRun]:
        """A run by id; None if it does not exist or belongs to another user."""
        parsed = parse_run_id(run_id)
        if parsed is None:
            return None
        run = self.db.get(BackgroundRun, parsed)
        if run is None or (user_id is not None and run.user_id != user_id):
            return None
        return run

    def apply_patch(self, run: BackgroundRun, request: PatchRequest) -> BackgroundRun:
        """
        Apply a caller's patch to a run.

        Legacy status-only payloads are mapped to an operation first. An
        explicitly supplied output or error message is written together with
        the transition.

        Raises:
            TransitionRejectedError: If the transition is not allowed
            TransitionConflict: If the run changed while the patch was applied
        """
        request = with_derived_operation(request)
        if not request.operation:
            raise TransitionRejectedError(
                "invalid_payload", "No valid operation could be derived from update payload."
            )

        extra: Dict[str, Any] = {}
        if request.has_output:
            extra["output"] = request.output
        if "error_message" in request.model_fields_set:
            extra["error_message"] = request.error_message

        return self.store.apply_transition(run, request, self.clock(), extra=extra)
