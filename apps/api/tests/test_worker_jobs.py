from __future__ import annotations

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from fakes import ScriptedProvider, canonical
from mailsync.core.config import get_settings
from mailsync.db.session import get_sessionmaker
from mailsync.models.enums import JobStatus, JobType
from mailsync.models.jobs import BgJob
from mailsync.models.mail import EmailAccount, EmailMessage
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.worker.handlers import build_handlers
from mailsync.worker.jobs.deps import JobDependencies
from mailsync.worker.scheduler import JobScheduler, SchedulerConfig


def _scheduler(script: ScriptedProvider, clock) -> JobScheduler:  # type: ignore[no-untyped-def]
    deps = JobDependencies(
        settings=get_settings(),
        http_factory=httpx.Client,
        provider_factory=script.factory,
        clock=clock,
    )
    return JobScheduler(
        session_factory=get_sessionmaker(),
        handlers=build_handlers(deps),
        config=SchedulerConfig(),
        clock=clock,
    )


def _jobs(db_session: Session, job_type: JobType) -> list[BgJob]:
    db_session.expire_all()
    return list(db_session.execute(select(BgJob).where(BgJob.type == job_type)).scalars().all())


def test_account_sync_job_ingests_messages(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    script = ScriptedProvider()
    script.batches = [[canonical("w1"), canonical("w2")]]
    scheduler = _scheduler(script, clock)
    scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()

    assert scheduler.run_one_job() is True

    (job,) = _jobs(db_session, JobType.account_sync)
    assert job.status == JobStatus.succeeded
    count = len(db_session.execute(select(EmailMessage.id)).all())
    assert count == 2


def test_transient_provider_error_is_retried(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    script = ScriptedProvider()
    script.error = ProviderError(status_code=503, message="unavailable")
    scheduler = _scheduler(script, clock)
    scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()

    scheduler.run_one_job()

    (job,) = _jobs(db_session, JobType.account_sync)
    assert job.status == JobStatus.queued
    assert job.attempts == 1
    assert "unavailable" in job.last_error


def test_auth_error_fails_job_permanently(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account_id = make_account(make_user())
    script = ScriptedProvider()
    script.error = ProviderAuthError(status_code=401, message="revoked")
    scheduler = _scheduler(script, clock)
    scheduler.enqueue_account_sync(db_session, account_id, reason="test")
    db_session.commit()

    scheduler.run_one_job()

    (job,) = _jobs(db_session, JobType.account_sync)
    assert job.status == JobStatus.failed
    assert job.attempts == 1
    assert db_session.get(EmailAccount, account_id).requires_reauth is True


def test_all_accounts_sync_fans_out_per_user(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    alice = make_user("alice@crm.test")
    bob = make_user("bob@crm.test")
    a1 = make_account(alice, email_address="a1@crm.test")
    a2 = make_account(alice, email_address="a2@crm.test")
    make_account(bob, email_address="b1@crm.test")
    scheduler = _scheduler(ScriptedProvider(), clock)
    scheduler.enqueue(db_session, job_type=JobType.all_accounts_sync, payload={"user_id": str(alice)})
    db_session.commit()

    scheduler.run_one_job()

    assert sorted(j.account_id for j in _jobs(db_session, JobType.account_sync)) == sorted([a1, a2])


def test_account_sync_for_deleted_account_is_permanent(db_session: Session, clock) -> None:  # type: ignore[no-untyped-def]
    from uuid import uuid4

    scheduler = _scheduler(ScriptedProvider(), clock)
    scheduler.enqueue(db_session, job_type=JobType.account_sync, payload={"account_id": str(uuid4())})
    db_session.commit()

    scheduler.run_one_job()

    (job,) = _jobs(db_session, JobType.account_sync)
    assert job.status == JobStatus.failed
    assert job.attempts == 1


def test_worker_once_drains_queue_without_periodic_install(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    from mailsync.worker import __main__ as worker_main

    calls: list[str] = []

    class _Scheduler:
        def run_until_idle(self) -> int:
            calls.append("drain")
            return 0

        def install_periodic_sync(self) -> None:
            calls.append("periodic")

    monkeypatch.setattr(worker_main, "build_scheduler", lambda: _Scheduler())
    worker_main.main(["--once"])

    assert calls == ["drain"]
