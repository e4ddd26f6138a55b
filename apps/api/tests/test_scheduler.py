from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.db.session import get_sessionmaker
from mailsync.models.enums import JobStatus, JobType
from mailsync.models.jobs import BgJob
from mailsync.worker.errors import JobConflictError, PermanentJobError
from mailsync.worker.scheduler import JobContext, JobScheduler, SchedulerConfig


class Recorder:
    def __init__(self, *, fail_times: int = 0, error: Exception | None = None) -> None:
        self.calls: list[JobContext] = []
        self.fail_times = fail_times
        self.error = error or RuntimeError("provider timeout")

    def __call__(self, ctx: JobContext) -> None:
        self.calls.append(ctx)
        if len(self.calls) <= self.fail_times:
            raise self.error


def _scheduler(clock, handlers, **config) -> JobScheduler:  # type: ignore[no-untyped-def]
    return JobScheduler(
        session_factory=get_sessionmaker(),
        handlers=handlers,
        config=SchedulerConfig(**config),
        clock=clock,
    )


def _job(db_session: Session, job_id) -> BgJob:  # type: ignore[no-untyped-def]
    db_session.expire_all()
    return db_session.get(BgJob, job_id)


def test_backoff_doubles_per_attempt(clock) -> None:  # type: ignore[no-untyped-def]
    scheduler = _scheduler(clock, {})
    assert [scheduler.backoff_seconds(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_retry_then_success_waits_two_then_four_seconds(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    handler = Recorder(fail_times=2)
    scheduler = _scheduler(clock, {JobType.account_sync: handler})
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()

    assert scheduler.run_one_job() is True
    job = _job(db_session, job_id)
    assert (job.status, job.attempts) == (JobStatus.queued, 1)
    assert job.run_at == clock.now + timedelta(seconds=2)

    clock.advance(seconds=1)
    assert scheduler.run_one_job() is False

    clock.advance(seconds=1)
    assert scheduler.run_one_job() is True
    job = _job(db_session, job_id)
    assert job.attempts == 2
    assert job.run_at == clock.now + timedelta(seconds=4)

    clock.advance(seconds=4)
    assert scheduler.run_one_job() is True
    job = _job(db_session, job_id)
    assert job.status == JobStatus.succeeded
    assert job.attempts == 3
    assert [c.attempt for c in handler.calls] == [1, 2, 3]


def test_exhausted_retries_mark_job_failed(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    scheduler = _scheduler(clock, {JobType.account_sync: Recorder(fail_times=10)})
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()

    for _ in range(3):
        clock.advance(seconds=60)
        scheduler.run_one_job()

    job = _job(db_session, job_id)
    assert job.status == JobStatus.failed
    assert job.attempts == 3
    assert "provider timeout" in job.last_error
    clock.advance(seconds=60)
    assert scheduler.run_one_job() is False


def test_permanent_error_fails_without_retry(db_session: Session, clock) -> None:  # type: ignore[no-untyped-def]
    handler = Recorder(fail_times=1, error=PermanentJobError("bad payload"))
    scheduler = _scheduler(clock, {JobType.all_accounts_sync: handler})
    job_id = scheduler.enqueue(db_session, job_type=JobType.all_accounts_sync)
    db_session.commit()

    scheduler.run_one_job()

    job = _job(db_session, job_id)
    assert job.status == JobStatus.failed
    assert job.attempts == 1


def test_account_sync_is_deduplicated_while_active(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    scheduler = _scheduler(clock, {JobType.account_sync: Recorder()})

    first = scheduler.enqueue_account_sync(db_session, account_id, reason="a")
    second = scheduler.enqueue_account_sync(db_session, account_id, reason="b")
    db_session.commit()
    assert first is not None
    assert second is None

    scheduler.run_one_job()
    third = scheduler.enqueue_account_sync(db_session, account_id, reason="c")
    db_session.commit()
    assert third is not None


def test_periodic_trigger_is_singleton_and_reschedules(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    user_id = make_user()
    enabled = make_account(user_id, email_address="a@crm.test")
    make_account(user_id, email_address="b@crm.test", sync_enabled=False)

    from mailsync.worker.jobs.fan_out import periodic_sync

    scheduler = _scheduler(
        clock,
        {
            JobType.periodic_sync: lambda ctx: periodic_sync(ctx, deps=None),
            JobType.account_sync: Recorder(),
        },
        periodic_interval_seconds=120,
    )
    scheduler.install_periodic_sync()
    scheduler.install_periodic_sync()

    periodic = db_session.execute(select(BgJob).where(BgJob.type == JobType.periodic_sync)).scalars().all()
    assert len(periodic) == 1

    assert scheduler.run_one_job() is True
    db_session.expire_all()
    syncs = db_session.execute(select(BgJob).where(BgJob.type == JobType.account_sync)).scalars().all()
    assert [j.account_id for j in syncs] == [enabled]

    queued_periodic = (
        db_session.execute(
            select(BgJob).where(BgJob.type == JobType.periodic_sync, BgJob.status == JobStatus.queued)
        )
        .scalars()
        .all()
    )
    assert len(queued_periodic) == 1
    assert queued_periodic[0].run_at == clock.now + timedelta(seconds=120)


def test_finished_jobs_are_pruned_to_retention(db_session: Session, clock) -> None:  # type: ignore[no-untyped-def]
    scheduler = _scheduler(clock, {JobType.all_accounts_sync: Recorder()}, retain_succeeded=2)
    for _ in range(4):
        scheduler.enqueue(db_session, job_type=JobType.all_accounts_sync)
    db_session.commit()

    for _ in range(4):
        clock.advance(seconds=1)
        scheduler.run_one_job()

    counts = scheduler.job_counts(db_session)
    assert counts["succeeded"] == 2
    assert counts["queued"] == 0


def test_replay_requeues_failed_job(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    scheduler = _scheduler(clock, {JobType.account_sync: Recorder(fail_times=1, error=PermanentJobError("nope"))})
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()
    scheduler.run_one_job()

    failed = scheduler.list_jobs(db_session, status=JobStatus.failed)
    assert [j.id for j in failed] == [job_id]

    replayed = scheduler.replay_job(db_session, job_id)
    db_session.commit()
    assert replayed.status == JobStatus.queued
    assert replayed.attempts == 0

    assert scheduler.run_one_job() is True
    assert _job(db_session, job_id).status == JobStatus.succeeded


def test_replay_conflicts_with_active_duplicate(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    scheduler = _scheduler(clock, {JobType.account_sync: Recorder(fail_times=1, error=PermanentJobError("nope"))})
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()
    scheduler.run_one_job()
    scheduler.enqueue_account_sync(db_session, account_id, reason="again")
    db_session.commit()

    with pytest.raises(JobConflictError):
        scheduler.replay_job(db_session, job_id)


def test_missing_handler_is_permanent_failure(db_session: Session, clock) -> None:  # type: ignore[no-untyped-def]
    scheduler = _scheduler(clock, {})
    job_id = scheduler.enqueue(db_session, job_type=JobType.outbound_send, payload={})
    db_session.commit()

    scheduler.run_one_job()

    assert _job(db_session, job_id).status == JobStatus.failed


def _simulate_crash(db_session: Session, job_id, *, locked_at) -> None:  # type: ignore[no-untyped-def]
    job = _job(db_session, job_id)
    job.status = JobStatus.running
    job.attempts = job.attempts + 1
    job.locked_at = locked_at
    job.locked_by = "dead-host:0"
    db_session.commit()


def test_periodic_trigger_survives_worker_crash(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    make_account(make_user())
    recorder = Recorder()
    scheduler = _scheduler(
        clock,
        {JobType.periodic_sync: recorder, JobType.account_sync: Recorder()},
        lease_seconds=60,
    )
    first_id = scheduler.install_periodic_sync()
    _simulate_crash(db_session, first_id, locked_at=clock.now)

    clock.advance(seconds=61)
    reinstalled_id = scheduler.install_periodic_sync()

    assert reinstalled_id is not None
    assert scheduler.run_until_idle() >= 1
    assert len(recorder.calls) == 1
    db_session.expire_all()
    queued = (
        db_session.execute(
            select(BgJob).where(BgJob.type == JobType.periodic_sync, BgJob.status == JobStatus.queued)
        )
        .scalars()
        .all()
    )
    assert len(queued) == 1


def test_orphaned_account_sync_is_requeued_after_lease(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    recorder = Recorder()
    scheduler = _scheduler(clock, {JobType.account_sync: recorder}, lease_seconds=60)
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="manual")
    db_session.commit()
    _simulate_crash(db_session, job_id, locked_at=clock.now)

    clock.advance(seconds=30)
    assert scheduler.enqueue_account_sync(db_session, account_id, reason="manual") is None
    assert scheduler.run_one_job() is False

    clock.advance(seconds=31)
    assert scheduler.run_one_job() is True
    job = _job(db_session, job_id)
    assert job.status == JobStatus.succeeded
    assert job.attempts == 2
    assert len(recorder.calls) == 1


def test_orphan_on_last_attempt_is_failed_and_unblocks_dedupe(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    scheduler = _scheduler(clock, {JobType.account_sync: Recorder()}, lease_seconds=60, max_attempts=1)
    job_id = scheduler.enqueue_account_sync(db_session, account_id, reason="manual")
    db_session.commit()
    _simulate_crash(db_session, job_id, locked_at=None)

    assert scheduler.run_one_job() is False
    job = _job(db_session, job_id)
    assert job.status == JobStatus.failed
    assert job.last_error.startswith("Lease expired")

    assert scheduler.enqueue_account_sync(db_session, account_id, reason="manual") is not None
