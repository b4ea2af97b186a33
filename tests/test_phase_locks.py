"""Tests for the phase lock manager."""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing_job import PhaseRun, PhaseRunStatus
from app.services.phase_locks import PhaseLocks, phase_locks

JOB = "partner-billing-cron"
PHASE = "B_dunning"
PERIOD = "2026-03-10"


def _rows(db_session):
    return (
        db_session.query(PhaseRun)
        .filter(PhaseRun.job_name == JOB)
        .filter(PhaseRun.phase == PHASE)
        .filter(PhaseRun.period == PERIOD)
        .all()
    )


@pytest.fixture()
def other_session(db_session):
    session = Session(bind=db_session.get_bind(), join_transaction_mode="create_savepoint")
    try:
        yield session
    finally:
        session.close()


def test_concurrent_runner_loses_the_insert(db_session, other_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a") is True
    assert phase_locks.acquire(other_session, JOB, PHASE, PERIOD, "run-b") is False

    rows = _rows(db_session)
    assert [row.correlation_id for row in rows] == ["run-a"]


def test_unique_index_rejects_runner_with_stale_success_check(
    db_session, other_session, monkeypatch
):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    phase_locks.complete(db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.success)
    monkeypatch.setattr(PhaseLocks, "completed", staticmethod(lambda *args: False))

    results = [
        phase_locks.acquire(other_session, JOB, PHASE, PERIOD, "run-b"),
        phase_locks.acquire(other_session, JOB, PHASE, PERIOD, "run-c"),
    ]

    assert results == [False, False]
    rows = _rows(db_session)
    assert len(rows) == 1
    assert rows[0].status == PhaseRunStatus.success


def test_second_acquire_fails_while_first_is_running(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a") is True
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-b") is False

    rows = _rows(db_session)
    assert len(rows) == 1
    assert rows[0].correlation_id == "run-a"
    assert rows[0].status == PhaseRunStatus.running


def test_acquire_skips_completed_phase(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    phase_locks.complete(
        db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.success, {"counts": {}}
    )

    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-b") is False
    assert len(_rows(db_session)) == 1


def test_failed_phase_can_be_retried(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    phase_locks.complete(
        db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.failed, error="boom"
    )

    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-b") is True
    statuses = sorted(row.status.value for row in _rows(db_session))
    assert statuses == ["failed", "running"]


def test_locks_are_scoped_per_period_and_phase(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    assert phase_locks.acquire(db_session, JOB, PHASE, "2026-03-11", "run-b")
    assert phase_locks.acquire(db_session, JOB, "C_trials", PERIOD, "run-c")


def test_complete_only_touches_own_row(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")

    assert (
        phase_locks.complete(
            db_session, JOB, PHASE, PERIOD, "intruder", PhaseRunStatus.success
        )
        is False
    )
    row = _rows(db_session)[0]
    db_session.refresh(row)
    assert row.status == PhaseRunStatus.running

    assert phase_locks.complete(
        db_session,
        JOB,
        PHASE,
        PERIOD,
        "run-a",
        PhaseRunStatus.success,
        {"counts": {"escalations": 1}, "errors": []},
    )
    db_session.refresh(row)
    assert row.status == PhaseRunStatus.success
    assert row.finished_at is not None
    assert row.results["counts"] == {"escalations": 1}


def test_complete_rejects_running_status(db_session):
    with pytest.raises(ValueError):
        phase_locks.complete(db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.running)


def test_stuck_lock_reset_allows_retry(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "crashed")
    later = datetime.now(UTC) + timedelta(hours=2)

    stuck = phase_locks.stuck(db_session, timedelta(hours=1), now=later)
    assert [run.correlation_id for run in stuck] == ["crashed"]
    assert phase_locks.stuck(db_session, timedelta(hours=1)) == []

    reset = phase_locks.reset(db_session, str(stuck[0].id), "worker died")
    assert reset.status == PhaseRunStatus.failed
    assert reset.error == "worker died"
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "retry") is True


def test_reset_rejects_finished_run(db_session):
    assert phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    phase_locks.complete(db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.success)
    run = _rows(db_session)[0]

    with pytest.raises(HTTPException) as exc:
        phase_locks.reset(db_session, str(run.id))
    assert exc.value.status_code == 400


def test_list_filters_by_status(db_session):
    phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-a")
    phase_locks.complete(db_session, JOB, PHASE, PERIOD, "run-a", PhaseRunStatus.failed)
    phase_locks.acquire(db_session, JOB, PHASE, PERIOD, "run-b")

    failed = phase_locks.list(
        db_session, PHASE, "failed", None, "started_at", "desc", 50, 0
    )
    assert [run.correlation_id for run in failed] == ["run-a"]

    with pytest.raises(HTTPException):
        phase_locks.list(db_session, None, "bogus", None, "started_at", "desc", 50, 0)
