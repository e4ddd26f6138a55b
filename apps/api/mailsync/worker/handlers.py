from __future__ import annotations

from functools import partial

import httpx

from mailsync.core.config import Settings, get_settings
from mailsync.db.session import get_sessionmaker
from mailsync.models.enums import JobType
from mailsync.worker.jobs.account_sync import account_sync
from mailsync.worker.jobs.deps import JobDependencies
from mailsync.worker.jobs.fan_out import all_accounts_sync, periodic_sync
from mailsync.worker.jobs.outbound_send import outbound_send
from mailsync.worker.scheduler import JobHandler, JobScheduler, SchedulerConfig


def build_handlers(deps: JobDependencies) -> dict[JobType, JobHandler]:
    return {
        JobType.account_sync: partial(account_sync, deps=deps),
        JobType.all_accounts_sync: partial(all_accounts_sync, deps=deps),
        JobType.periodic_sync: partial(periodic_sync, deps=deps),
        JobType.outbound_send: partial(outbound_send, deps=deps),
    }


def default_dependencies(settings: Settings | None = None) -> JobDependencies:
    settings = settings or get_settings()
    return JobDependencies(
        settings=settings,
        http_factory=lambda: httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS),
    )


def build_scheduler(
    *,
    settings: Settings | None = None,
    deps: JobDependencies | None = None,
) -> JobScheduler:
    settings = settings or get_settings()
    deps = deps or default_dependencies(settings)
    return JobScheduler(
        session_factory=get_sessionmaker(),
        handlers=build_handlers(deps),
        config=SchedulerConfig.from_settings(settings),
        clock=deps.clock,
    )
