"""Tests for the queued-run dispatcher."""

from datetime import timedelta

import httpx
import pytest

from background_runs.errors import DispatchConfigError, PermanentRunError
from background_runs.executors.base import ExecutorRegistry
from background_runs.models.run import BackgroundRun
from background_runs.schemas.dispatch import DispatchRequest
from background_runs.services.dispatcher import Dispatcher, normalize_limit
from conftest import CallableExecutor


def failing(message="upstream timeout"):
    def _fail(context):
        raise RuntimeError(message)

    return _fail


def build_dispatcher(test_db, registry, telemetry, clock, **executors):
    for run_type, executor in executors.items():
        registry.register(run_type, executor)
    return Dispatcher(test_db, registry, telemetry, clock=clock)


@pytest.mark.parametrize(
    "value,expected",
    [(None, 1), (float("nan"), 1), (0, 1), (-5, 1), (1, 1), (7.9, 7), (20, 20), (500, 20), (float("inf"), 20), ("3", 3), ("x", 1)],
)
def test_normalize_limit(value, expected):
    """Test batch limit normalization."""
    assert normalize_limit(value) == expected


def test_dispatch_success(test_db, make_run, registry, telemetry, telemetry_sink, clock):
    """Test a successful run ends succeeded with the executor output."""
    run = make_run(input={"n": 2})
    executor = CallableExecutor(lambda context: {"double": context.input["n"] * 2})
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=executor)

    result = dispatcher.dispatch_queued(DispatchRequest(limit=1))

    assert result.processed == 1
    outcome = result.outcomes[0]
    assert outcome.run_id == str(run.id)
    assert outcome.status == "succeeded"
    assert outcome.retried is False
    assert outcome.attempt_count == 1
    assert outcome.progress == 100
    assert outcome.output == {"double": 4}
    assert outcome.error is None
    assert telemetry_sink.names == ["background_run.started", "background_run.succeeded"]

    test_db.refresh(run)
    assert run.status == "succeeded"
    assert run.finished_at == clock()


def test_non_dict_output_is_wrapped(test_db, make_run, registry, telemetry, clock):
    """Test a non-dict executor result is stored under "result"."""
    make_run()
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(lambda c: 42))

    result = dispatcher.dispatch_queued()

    assert result.outcomes[0].output == {"result": 42}


def test_three_attempts_then_terminal_failure(test_db, make_run, registry, telemetry, telemetry_sink, clock):
    """Test transient failures back off 30s, 60s and then fail terminally."""
    run = make_run(retryable=True, max_attempts=3, attempt_count=0)
    executor = CallableExecutor(failing())
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=executor)

    first = dispatcher.dispatch_queued().outcomes[0]
    assert first.status == "queued"
    assert first.retried is True
    assert first.attempt_count == 1
    assert first.error == "upstream timeout"
    test_db.refresh(run)
    assert run.next_retry_at == clock() + timedelta(seconds=30)

    # Not due yet
    assert dispatcher.dispatch_queued().processed == 0
    assert executor.calls == 1

    clock.advance(30)
    second = dispatcher.dispatch_queued().outcomes[0]
    assert second.status == "queued"
    assert second.attempt_count == 2
    test_db.refresh(run)
    assert run.next_retry_at == clock() + timedelta(seconds=60)
    assert run.error_message is None

    clock.advance(60)
    third = dispatcher.dispatch_queued().outcomes[0]
    assert third.status == "failed"
    assert third.retried is False
    assert third.attempt_count == 3
    assert third.next_retry_at is None

    test_db.refresh(run)
    assert run.status == "failed"
    assert run.error_message == "upstream timeout"
    assert run.output == {"error": "upstream timeout"}
    assert run.next_retry_at is None
    assert executor.calls == 3
    assert telemetry_sink.names.count("background_run.retry_scheduled") == 2
    assert telemetry_sink.names.count("background_run.failed") == 3

    # Nothing is left to dispatch
    clock.advance(3600)
    assert dispatcher.dispatch_queued().processed == 0


def test_retry_scheduled_telemetry_metadata(test_db, make_run, registry, telemetry, telemetry_sink, clock):
    """Test the retry event carries the delay and the previous error."""
    make_run()
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(failing("flaky")))

    dispatcher.dispatch_queued()

    failed = [e for e in telemetry_sink.events if e.event_name == "background_run.failed"][0]
    scheduled = [e for e in telemetry_sink.events if e.event_name == "background_run.retry_scheduled"][0]
    assert failed.metadata["permanent"] is False
    assert failed.metadata["errorMessage"] == "flaky"
    assert scheduled.metadata["retryAfterSeconds"] == 30
    assert scheduled.metadata["previousError"] == "flaky"
    assert scheduled.session_id == "background-runs-dispatch"


def test_permanent_error_is_not_retried(test_db, make_run, registry, telemetry, telemetry_sink, clock):
    """Test a permanent failure is terminal even with attempts left."""
    run = make_run(max_attempts=5)

    def reject(context):
        raise PermanentRunError("Invalid payload")

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(reject))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "failed"
    assert outcome.retried is False
    assert outcome.error == "Invalid payload"
    test_db.refresh(run)
    assert run.attempt_count == 1
    assert "background_run.retry_scheduled" not in telemetry_sink.names


def test_downstream_4xx_is_permanent(test_db, make_run, registry, telemetry, clock):
    """Test a downstream 4xx response fails the run without retry."""
    make_run()

    def bad_request(context):
        request = httpx.Request("POST", "http://downstream.test")
        response = httpx.Response(400, request=request)
        raise httpx.HTTPStatusError("400 Bad Request", request=request, response=response)

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(bad_request))

    assert dispatcher.dispatch_queued().outcomes[0].status == "failed"


def test_not_retryable_run_fails_terminally(test_db, make_run, registry, telemetry, clock):
    """Test a run marked not retryable ends failed on a transient error."""
    make_run(retryable=False)
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(failing()))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "failed"
    assert outcome.retried is False


def test_unknown_run_type_fails_permanently(test_db, make_run, registry, telemetry, clock):
    """Test a run type with no executor fails permanently."""
    run = make_run(run_type="mystery")
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(lambda c: {}))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "failed"
    assert outcome.error == "Unsupported run_type: mystery"
    test_db.refresh(run)
    assert run.attempt_count == 1


def test_exhausted_run_is_failed_without_executing(test_db, make_run, registry, telemetry, clock):
    """Test a queued run with no attempts left is failed instead of started."""
    run = make_run(attempt_count=3, max_attempts=3)
    executor = CallableExecutor(lambda c: {})
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=executor)

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert executor.calls == 0
    assert outcome.status == "failed"
    assert outcome.error.startswith("Transition failed:")
    test_db.refresh(run)
    assert run.attempt_count == 3
    assert run.started_at is None


def test_runs_processed_oldest_first(test_db, make_run, registry, telemetry, clock):
    """Test runs are dispatched in creation order."""
    newest = make_run(created_at=clock() + timedelta(seconds=2))
    oldest = make_run()
    middle = make_run(created_at=clock() + timedelta(seconds=1))
    seen = []

    def record(context):
        seen.append(context.run_id)
        return {}

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(record))

    result = dispatcher.dispatch_queued(DispatchRequest(limit=2))

    assert result.processed == 2
    assert seen == [str(oldest.id), str(middle.id)]
    test_db.refresh(newest)
    assert newest.status == "queued"


def test_future_retries_are_skipped(test_db, make_run, registry, telemetry, clock):
    """Test runs with a retry time in the future are not dispatched."""
    later = make_run(next_retry_at=clock() + timedelta(seconds=90))
    due = make_run(created_at=clock() + timedelta(seconds=1), next_retry_at=clock())
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(lambda c: {}))

    result = dispatcher.dispatch_queued(DispatchRequest(limit=5))

    assert [o.run_id for o in result.outcomes] == [str(due.id)]
    test_db.refresh(later)
    assert later.status == "queued"


def test_filters_by_run_user_and_project(test_db, make_run, registry, telemetry, clock):
    """Test dispatch narrowed by run id, user and project."""
    target = make_run(user_id="user-2")
    make_run(user_id="user-1")
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(lambda c: {}))

    by_user = dispatcher.dispatch_queued(DispatchRequest(user_id="user-2", limit=5))
    assert [o.run_id for o in by_user.outcomes] == [str(target.id)]

    assert dispatcher.dispatch_queued(DispatchRequest(project_id="other", limit=5)).processed == 0
    assert dispatcher.dispatch_queued(DispatchRequest(run_id="not-a-uuid")).processed == 0


def test_cancel_requested_during_execution(test_db, session_factory, make_run, registry, telemetry, clock):
    """Test an executor that honours a cancel request ends the run without retry."""
    run = make_run(max_attempts=3)

    def cancel_then_check(context):
        other = session_factory()
        other_run = other.get(BackgroundRun, run.id)
        other_run.cancel_requested = True
        other.commit()
        other.close()
        context.raise_if_cancelled()
        return {"unreachable": True}

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(cancel_then_check))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "failed"
    assert outcome.retried is False
    assert outcome.error == "Run was cancelled on request."


def test_result_discarded_when_run_moved_during_execution(
    test_db, session_factory, make_run, registry, telemetry, telemetry_sink, clock
):
    """Test an administrative cancel during execution wins over the executor result."""
    run = make_run()

    def cancelled_underneath(context):
        other = session_factory()
        other_run = other.get(BackgroundRun, run.id)
        other_run.status = "cancelled"
        other_run.cancel_requested = True
        other_run.finished_at = clock()
        other.commit()
        other.close()
        return {"done": True}

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(cancelled_underneath))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "cancelled"
    assert outcome.output is None
    assert "background_run.succeeded" not in telemetry_sink.names


def test_run_started_elsewhere_is_skipped_not_failed(test_db, session_factory, make_run, registry, telemetry, clock):
    """Test a run another dispatcher started mid-batch is left alone."""
    first = make_run()
    second = make_run(created_at=clock() + timedelta(seconds=1))

    def start_second_elsewhere(context):
        other = session_factory()
        other_run = other.get(BackgroundRun, second.id)
        other_run.status = "running"
        other_run.attempt_count = 1
        other_run.started_at = clock()
        other.commit()
        other.close()
        return {"ok": True}

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(start_second_elsewhere))

    result = dispatcher.dispatch_queued(DispatchRequest(limit=2))

    assert [o.run_id for o in result.outcomes] == [str(first.id)]
    test_db.refresh(second)
    assert second.status == "running"
    assert second.error_message is None


def test_heartbeat_and_progress_from_executor(test_db, make_run, registry, telemetry, clock):
    """Test executor heartbeats and progress reports are persisted."""
    run = make_run()

    def long_task(context):
        clock.advance(5)
        assert context.heartbeat()
        assert context.report_progress(60)
        return {"ok": True}

    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(long_task))

    outcome = dispatcher.dispatch_queued().outcomes[0]

    assert outcome.status == "succeeded"
    test_db.refresh(run)
    assert run.last_heartbeat_at == clock()


def test_telemetry_failure_never_blocks_dispatch(test_db, make_run, registry, clock):
    """Test a broken telemetry sink does not affect run state."""
    from background_runs.services.telemetry import TelemetryEmitter

    class BrokenSink:
        def record(self, event):
            raise RuntimeError("sink down")

    make_run()
    registry.register("test", CallableExecutor(lambda c: {}))
    dispatcher = Dispatcher(test_db, registry, TelemetryEmitter(BrokenSink(), background=False), clock=clock)

    assert dispatcher.dispatch_queued().outcomes[0].status == "succeeded"


def test_empty_registry_is_a_config_error(test_db, telemetry):
    """Test a dispatcher cannot be built without executors."""
    with pytest.raises(DispatchConfigError):
        Dispatcher(test_db, ExecutorRegistry(), telemetry)


def test_outcome_serializes_camel_case(test_db, make_run, registry, telemetry, clock):
    """Test outcomes dump with camelCase keys."""
    make_run()
    dispatcher = build_dispatcher(test_db, registry, telemetry, clock, test=CallableExecutor(lambda c: {}))

    payload = dispatcher.dispatch_queued().outcomes[0].model_dump(by_alias=True)

    assert set(payload) >= {"runId", "status", "retried", "attemptCount", "progress", "output", "nextRetryAt", "startedAt", "finishedAt"}
    assert payload["startedAt"].endswith("Z")
