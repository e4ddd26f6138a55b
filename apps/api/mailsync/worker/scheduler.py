from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mailsync.core.config import Settings
from mailsync.core.logging import log_event
from mailsync.core.metrics import observe_job
from mailsync.models.enums import JobStatus, JobType
from mailsync.models.jobs import BgJob
from mailsync.worker.errors import JobConflictError, PermanentJobError

logger = logging.getLogger("mailsync.worker")

PERIODIC_SYNC_DEDUPE_KEY = "periodic_sync"
_ACTIVE_STATUSES = (JobStatus.queued, JobStatus.running)


@dataclass(frozen=True)
class SchedulerConfig:
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    periodic_interval_seconds: float = 120.0
    retain_succeeded: int = 100
    retain_failed: int = 200
    poll_interval_seconds: float = 0.5
    concurrency: int = 4
    lease_seconds: float = 900.0
    worker_id: str = field(default_factory=socket.gethostname)

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerConfig:
        return cls(
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_base_seconds=settings.JOB_BACKOFF_BASE_SECONDS,
            periodic_interval_seconds=float(settings.PERIODIC_SYNC_INTERVAL_SECONDS),
            retain_succeeded=settings.JOB_RETAIN_SUCCEEDED,
            retain_failed=settings.JOB_RETAIN_FAILED,
            poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
            concurrency=settings.WORKER_CONCURRENCY,
            lease_seconds=float(settings.JOB_LEASE_SECONDS),
        )


@dataclass(frozen=True)
class JobContext:
    session: Session
    scheduler: JobScheduler
    job_id: UUID
    job_type: JobType
    account_id: UUID | None
    payload: dict
    attempt: int


JobHandler = Callable[[JobContext], None]


class JobScheduler:
    """Durable job queue on the `bg_jobs` table.

    Lifecycle: queued -> running -> succeeded | queued (retry with backoff) | failed.
    The attempt counter is bumped at claim time, so it never passes
    `max_attempts` before the job is marked failed.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker | Callable[[], Session],
        handlers: Mapping[JobType, JobHandler],
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = dict(handlers)
        self.config = config or SchedulerConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    def backoff_seconds(self, attempts: int) -> float:
        return self.config.backoff_base_seconds * (2 ** max(0, attempts - 1))

    # Enqueueing

    def enqueue(
        self,
        session: Session,
        *,
        job_type: JobType,
        payload: dict | None = None,
        account_id: UUID | None = None,
        dedupe_key: str | None = None,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> UUID | None:
        """Insert a queued job; returns None when an active job already holds `dedupe_key`."""
        if dedupe_key is not None and self._active_duplicate(session, job_type, dedupe_key) is not None:
            log_event(logger, "jobs.deduplicated", job_type=job_type, dedupe_key=dedupe_key)
            return None

        now = self.now()
        job = BgJob(
            type=job_type,
            status=JobStatus.queued,
            account_id=account_id,
            payload=dict(payload or {}),
            dedupe_key=dedupe_key,
            run_at=run_at or now,
            attempts=0,
            max_attempts=max_attempts or self.config.max_attempts,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():
                session.add(job)
                session.flush()
        except IntegrityError:
            # Lost a race against another enqueuer for the same dedupe key.
            log_event(logger, "jobs.deduplicated", job_type=job_type, dedupe_key=dedupe_key)
            return None

        log_event(
            logger,
            "jobs.enqueued",
            job_id=job.id,
            job_type=job_type,
            account_id=account_id,
            run_at=job.run_at,
            dedupe_key=dedupe_key,
        )
        return job.id

    def enqueue_account_sync(
        self,
        session: Session,
        account_id: UUID,
        *,
        reason: str,
        run_at: datetime | None = None,
    ) -> UUID | None:
        # At most one queued/running sync per account.
        return self.enqueue(
            session,
            job_type=JobType.account_sync,
            account_id=account_id,
            payload={"account_id": str(account_id), "reason": reason},
            dedupe_key=f"account_sync:{account_id}",
            run_at=run_at,
        )

    def install_periodic_sync(self) -> UUID | None:
        """(Re)install the single periodic trigger; safe to call on every process start."""
        session = self._session_factory()
        try:
            self.reclaim_expired_leases(session)
            removed = session.execute(
                delete(BgJob).where(
                    BgJob.type == JobType.periodic_sync,
                    BgJob.status == JobStatus.queued,
                )
            ).rowcount
            job_id = self.enqueue(
                session,
                job_type=JobType.periodic_sync,
                payload={"reason": "periodic"},
                dedupe_key=PERIODIC_SYNC_DEDUPE_KEY,
            )
            session.commit()
        finally:
            session.close()

        log_event(logger, "jobs.periodic.installed", job_id=job_id, removed=removed)
        return job_id

    # Execution

    def run_one_job(self, *, worker_id: str | None = None) -> bool:
        session = self._session_factory()
        try:
            job = self._claim_next_job(session, worker_id=worker_id or self.config.worker_id)
            if job is None:
                session.commit()
                return False

            ctx = JobContext(
                session=session,
                scheduler=self,
                job_id=job.id,
                job_type=JobType(job.type),
                account_id=job.account_id,
                payload=dict(job.payload or {}),
                attempt=job.attempts,
            )
            handler = self._handlers.get(ctx.job_type)
            try:
                if handler is None:
                    raise PermanentJobError(f"No handler registered for {ctx.job_type}")
                handler(ctx)
            except PermanentJobError as e:
                session.rollback()
                self._mark_failed(session, ctx, error=str(e), permanent=True)
            except Exception as e:  # noqa: BLE001
                session.rollback()
                self._mark_failed(session, ctx, error=f"{type(e).__name__}: {e}", permanent=False)
            else:
                self._mark_succeeded(session, ctx)

            session.commit()
            return True
        finally:
            session.close()

    def run_until_idle(self, *, max_jobs: int = 1000) -> int:
        ran = 0
        while ran < max_jobs and self.run_one_job():
            ran += 1
        return ran

    def reclaim_expired_leases(self, session: Session) -> int:
        """Requeue (or fail, once attempts are spent) running jobs locked for longer than the lease."""
        now = self.now()
        cutoff = now - timedelta(seconds=self.config.lease_seconds)
        orphans = list(
            session.execute(
                select(BgJob)
                .where(
                    BgJob.status == JobStatus.running,
                    or_(BgJob.locked_at.is_(None), BgJob.locked_at < cutoff),
                )
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        for job in orphans:
            job_type = JobType(job.type)
            previous_owner = job.locked_by
            job.last_error = f"Lease expired while running on {previous_owner or 'unknown worker'}"
            job.locked_at = None
            job.locked_by = None
            job.updated_at = now
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.failed
                job.finished_at = now
                observe_job(job_type=job_type.value, outcome="failed")
            else:
                job.status = JobStatus.queued
                job.run_at = now
            session.flush()
            log_event(
                logger,
                "jobs.lease_expired",
                level=logging.WARNING,
                job_id=job.id,
                job_type=job_type,
                attempts=job.attempts,
                status=job.status,
                previous_owner=previous_owner,
            )
            if job.status == JobStatus.failed and job_type == JobType.periodic_sync:
                self.enqueue(
                    session,
                    job_type=JobType.periodic_sync,
                    payload={"reason": "periodic"},
                    dedupe_key=PERIODIC_SYNC_DEDUPE_KEY,
                    run_at=now,
                )
        return len(orphans)

    def _claim_next_job(self, session: Session, *, worker_id: str) -> BgJob | None:
        now = self.now()
        if self.reclaim_expired_leases(session):
            session.commit()
        candidate_id = (
            session.execute(
                select(BgJob.id)
                .where(BgJob.status == JobStatus.queued, BgJob.run_at <= now)
                .order_by(BgJob.run_at, BgJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .first()
        )
        if candidate_id is None:
            return None

        # Conditional update so two workers never both win the same row.
        claimed = session.execute(
            update(BgJob)
            .where(BgJob.id == candidate_id, BgJob.status == JobStatus.queued)
            .values(
                status=JobStatus.running,
                attempts=BgJob.attempts + 1,
                locked_at=now,
                locked_by=worker_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            session.rollback()
            return None
        session.commit()

        return (
            session.execute(
                select(BgJob).where(BgJob.id == candidate_id).execution_options(populate_existing=True)
            )
            .scalars()
            .one()
        )

    def _load_job(self, session: Session, job_id: UUID) -> BgJob | None:
        return (
            session.execute(select(BgJob).where(BgJob.id == job_id).execution_options(populate_existing=True))
            .scalars()
            .first()
        )

    def _mark_succeeded(self, session: Session, ctx: JobContext) -> None:
        job = self._load_job(session, ctx.job_id)
        if job is None:
            return
        now = self.now()
        job.status = JobStatus.succeeded
        job.last_error = None
        job.locked_at = None
        job.locked_by = None
        job.finished_at = now
        job.updated_at = now
        session.flush()

        observe_job(job_type=ctx.job_type.value, outcome="succeeded")
        log_event(logger, "jobs.succeeded", job_id=ctx.job_id, job_type=ctx.job_type, attempts=job.attempts)
        self._after_terminal(session, ctx)

    def _mark_failed(self, session: Session, ctx: JobContext, *, error: str, permanent: bool) -> None:
        job = self._load_job(session, ctx.job_id)
        if job is None:
            return
        now = self.now()
        job.last_error = error[:2000]
        job.locked_at = None
        job.locked_by = None
        job.updated_at = now

        if permanent or job.attempts >= job.max_attempts:
            job.status = JobStatus.failed
            job.finished_at = now
            session.flush()
            observe_job(job_type=ctx.job_type.value, outcome="failed")
            log_event(
                logger,
                "jobs.failed",
                level=logging.ERROR,
                job_id=ctx.job_id,
                job_type=ctx.job_type,
                attempts=job.attempts,
                permanent=permanent,
                error=error,
            )
            self._after_terminal(session, ctx)
            return

        delay = self.backoff_seconds(job.attempts)
        job.status = JobStatus.queued
        job.run_at = now + timedelta(seconds=delay)
        session.flush()
        observe_job(job_type=ctx.job_type.value, outcome="retry")
        log_event(
            logger,
            "jobs.retry_scheduled",
            level=logging.WARNING,
            job_id=ctx.job_id,
            job_type=ctx.job_type,
            attempts=job.attempts,
            delay_seconds=delay,
            error=error,
        )

    def _after_terminal(self, session: Session, ctx: JobContext) -> None:
        if ctx.job_type == JobType.periodic_sync:
            self.enqueue(
                session,
                job_type=JobType.periodic_sync,
                payload={"reason": "periodic"},
                dedupe_key=PERIODIC_SYNC_DEDUPE_KEY,
                run_at=self.now() + timedelta(seconds=max(1.0, self.config.periodic_interval_seconds)),
            )
        self.prune_finished(session)

    def prune_finished(self, session: Session) -> int:
        removed = 0
        for status, keep in (
            (JobStatus.succeeded, self.config.retain_succeeded),
            (JobStatus.failed, self.config.retain_failed),
        ):
            stale_ids = list(
                session.execute(
                    select(BgJob.id)
                    .where(BgJob.status == status)
                    .order_by(BgJob.finished_at.desc(), BgJob.created_at.desc())
                    .offset(max(0, keep))
                )
                .scalars()
                .all()
            )
            if stale_ids:
                removed += session.execute(delete(BgJob).where(BgJob.id.in_(stale_ids))).rowcount
        return removed

    # Inspection

    def list_jobs(
        self,
        session: Session,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[BgJob]:
        stmt = select(BgJob).order_by(BgJob.updated_at.desc(), BgJob.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(BgJob.status == status)
        if job_type is not None:
            stmt = stmt.where(BgJob.type == job_type)
        return list(session.execute(stmt).scalars().all())

    def job_counts(self, session: Session) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        rows = session.execute(select(BgJob.status, func.count()).group_by(BgJob.status)).all()
        for status, count in rows:
            counts[JobStatus(status).value] = int(count)
        return counts

    def replay_job(self, session: Session, job_id: UUID) -> BgJob | None:
        job = session.execute(select(BgJob).where(BgJob.id == job_id).with_for_update()).scalars().first()
        if job is None or job.status != JobStatus.failed:
            return None
        if job.dedupe_key is not None and self._active_duplicate(session, job.type, job.dedupe_key) is not None:
            raise JobConflictError("An equivalent job is already queued or running")

        now = self.now()
        job.status = JobStatus.queued
        job.attempts = 0
        job.run_at = now
        job.last_error = None
        job.locked_at = None
        job.locked_by = None
        job.finished_at = None
        job.updated_at = now
        session.flush()
        log_event(logger, "jobs.replayed", job_id=job.id, job_type=job.type)
        return job

    def _active_duplicate(self, session: Session, job_type: JobType, dedupe_key: str) -> UUID | None:
        return (
            session.execute(
                select(BgJob.id).where(
                    BgJob.type == job_type,
                    BgJob.dedupe_key == dedupe_key,
                    BgJob.status.in_(_ACTIVE_STATUSES),
                )
            )
            .scalars()
            .first()
        )


def run_worker(scheduler: JobScheduler, *, stop_event: threading.Event, worker_id: str | None = None) -> None:
    while not stop_event.is_set():
        try:
            ran = scheduler.run_one_job(worker_id=worker_id)
        except SQLAlchemyError as e:
            log_event(logger, "worker.loop_error", level=logging.ERROR, worker_id=worker_id, error=str(e))
            ran = False
        if not ran:
            stop_event.wait(scheduler.config.poll_interval_seconds)


def run_worker_pool(
    scheduler: JobScheduler,
    *,
    stop_event: threading.Event,
    concurrency: int | None = None,
) -> None:
    """Run a fixed-size pool of worker threads until `stop_event` is set."""
    size = max(1, concurrency or scheduler.config.concurrency)
    threads = [
        threading.Thread(
            target=run_worker,
            kwargs={
                "scheduler": scheduler,
                "stop_event": stop_event,
                "worker_id": f"{scheduler.config.worker_id}:{i}",
            },
            name=f"mailsync-worker-{i}",
            daemon=True,
        )
        for i in range(size)
    ]
    for t in threads:
        t.start()
    log_event(logger, "worker.pool.started", concurrency=size, worker_id=scheduler.config.worker_id)
    for t in threads:
        t.join()
