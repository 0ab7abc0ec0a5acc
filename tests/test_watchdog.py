"""Tests for stale-run recovery."""

from datetime import timedelta

from background_runs.models.run import BackgroundRun
from background_runs.schemas.dispatch import RecoveryRequest
from background_runs.services.watchdog import WATCHDOG_MESSAGE, Watchdog


def make_running(make_run, clock, minutes_ago, **overrides):
    started = clock() - timedelta(minutes=minutes_ago)
    values = {
        "status": "running",
        "attempt_count": 1,
        "started_at": started,
        "created_at": started,
        "progress": 10,
    }
    values.update(overrides)
    return make_run(**values)


def test_stale_run_is_failed_and_requeued(test_db, make_run, telemetry, telemetry_sink, clock):
    """Test a retryable stale run goes back to the queue with backoff."""
    run = make_running(make_run, clock, minutes_ago=30)

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running(RecoveryRequest(limit=5))

    assert (result.scanned, result.stale, result.recovered, result.retried, result.failed) == (1, 1, 1, 1, 0)
    outcome = result.outcomes[0]
    assert outcome.status == "queued"
    assert outcome.retried is True
    assert outcome.error == WATCHDOG_MESSAGE

    test_db.refresh(run)
    assert run.status == "queued"
    assert run.next_retry_at == clock() + timedelta(seconds=30)
    assert run.output == {"error": WATCHDOG_MESSAGE, "watchdog": True}
    assert telemetry_sink.names == [
        "background_run.watchdog_marked_failed",
        "background_run.watchdog_retried",
    ]
    assert telemetry_sink.events[0].session_id == "background-runs-watchdog"


def test_not_retryable_stale_run_ends_failed(test_db, make_run, telemetry, telemetry_sink, clock):
    """Test a stale run with retryable=false is never requeued."""
    run = make_running(make_run, clock, minutes_ago=30, retryable=False, attempt_count=1, max_attempts=10)

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running()

    assert result.failed == 1
    assert result.retried == 0
    test_db.refresh(run)
    assert run.status == "failed"
    assert run.error_message == WATCHDOG_MESSAGE
    assert run.next_retry_at is None
    assert telemetry_sink.names[-1] == "background_run.watchdog_terminal_failure"


def test_exhausted_stale_run_ends_failed(test_db, make_run, telemetry, clock):
    """Test a stale run out of attempts ends failed."""
    run = make_running(make_run, clock, minutes_ago=30, attempt_count=3, max_attempts=3)

    Watchdog(test_db, telemetry, clock=clock).recover_stale_running()

    test_db.refresh(run)
    assert run.status == "failed"


def test_fresh_runs_are_left_alone(test_db, make_run, telemetry, clock):
    """Test runs with a recent signal are not touched."""
    fresh = make_running(make_run, clock, minutes_ago=2)
    beating = make_running(make_run, clock, minutes_ago=60, last_heartbeat_at=clock() - timedelta(minutes=1))

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running(RecoveryRequest(limit=10))

    assert result.scanned == 2
    assert result.stale == 0
    for run in (fresh, beating):
        test_db.refresh(run)
        assert run.status == "running"


def test_stale_after_seconds_is_respected(test_db, make_run, telemetry, clock):
    """Test a custom staleness threshold."""
    make_running(make_run, clock, minutes_ago=5)
    watchdog = Watchdog(test_db, telemetry, clock=clock)

    assert watchdog.recover_stale_running(RecoveryRequest(stale_after_seconds=600)).stale == 0
    assert watchdog.recover_stale_running(RecoveryRequest(stale_after_seconds=300)).stale == 1


def test_limit_truncates_stale_runs(test_db, make_run, telemetry, clock):
    """Test only up to limit stale runs are recovered."""
    for minutes in (40, 30, 20):
        make_running(make_run, clock, minutes_ago=minutes)

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running(RecoveryRequest(limit=2))

    assert result.scanned == 3
    assert result.stale == 2
    assert result.recovered == 2


def test_queued_runs_are_ignored(test_db, make_run, telemetry, clock):
    """Test the watchdog only scans running runs."""
    make_run(created_at=clock() - timedelta(days=1))

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running()

    assert result.scanned == 0


def test_run_finished_concurrently_is_skipped(test_db, session_factory, make_run, telemetry, clock):
    """Test a run completed by the dispatcher after the scan is skipped silently."""
    run = make_running(make_run, clock, minutes_ago=30)
    watchdog = Watchdog(test_db, telemetry, clock=clock)
    running = watchdog.store.select_running

    def select_then_complete(filters, limit):
        rows = running(filters, limit)
        other = session_factory()
        other_run = other.get(BackgroundRun, run.id)
        other_run.status = "succeeded"
        other_run.progress = 100
        other_run.finished_at = clock()
        other.commit()
        other.close()
        return rows

    watchdog.store.select_running = select_then_complete

    result = watchdog.recover_stale_running()

    assert result.stale == 1
    assert result.recovered == 0
    assert result.outcomes == []
    test_db.refresh(run)
    assert run.status == "succeeded"


def test_heartbeat_after_scan_spares_run(test_db, session_factory, make_run, telemetry, clock):
    """Test a run that heartbeats while the watchdog works through the batch is not failed."""
    older = make_running(make_run, clock, minutes_ago=40)
    newer = make_running(make_run, clock, minutes_ago=30)
    watchdog = Watchdog(test_db, telemetry, clock=clock)
    running = watchdog.store.select_running

    def select_then_heartbeat(filters, limit):
        rows = running(filters, limit)
        other = session_factory()
        other_run = other.get(BackgroundRun, newer.id)
        other_run.last_heartbeat_at = clock()
        other.commit()
        other.close()
        return rows

    watchdog.store.select_running = select_then_heartbeat

    result = watchdog.recover_stale_running(RecoveryRequest(limit=5))

    assert result.stale == 2
    assert [o.run_id for o in result.outcomes] == [str(older.id)]
    test_db.refresh(newer)
    assert newer.status == "running"


def test_stale_run_with_pending_cancel_is_not_requeued(test_db, make_run, telemetry, telemetry_sink, clock):
    """Test a stale run carrying a cancel request ends failed instead of going back to the queue."""
    run = make_running(make_run, clock, minutes_ago=60, cancel_requested=True, max_attempts=3)

    result = Watchdog(test_db, telemetry, clock=clock).recover_stale_running(RecoveryRequest(limit=5))

    assert (result.recovered, result.retried, result.failed) == (1, 0, 1)
    assert result.outcomes[0].retried is False

    test_db.refresh(run)
    assert run.status == "failed"
    assert run.cancel_requested is True
    assert run.next_retry_at is None
    assert telemetry_sink.names == [
        "background_run.watchdog_marked_failed",
        "background_run.watchdog_terminal_failure",
    ]


def test_requeue_conflict_still_counts_run_as_recovered(test_db, session_factory, make_run, telemetry, clock):
    """Test a run failed by the watchdog is reported even when its requeue loses a race."""
    run = make_running(make_run, clock, minutes_ago=30)
    watchdog = Watchdog(test_db, telemetry, clock=clock)
    apply = watchdog.store.apply_transition

    def requeued_elsewhere_first(target, request, now):
        if request.operation == "retry":
            other = session_factory()
            other_run = other.get(BackgroundRun, target.id)
            other_run.status = "queued"
            other.commit()
            other.close()
        return apply(target, request, now)

    watchdog.store.apply_transition = requeued_elsewhere_first

    result = watchdog.recover_stale_running(RecoveryRequest(limit=5))

    assert (result.stale, result.recovered, result.retried, result.failed) == (1, 1, 0, 1)
    outcome = result.outcomes[0]
    assert outcome.run_id == str(run.id)
    assert outcome.retried is False
    assert outcome.status == "queued"
    assert outcome.error == WATCHDOG_MESSAGE
