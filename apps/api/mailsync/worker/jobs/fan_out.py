from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select

from mailsync.core.logging import log_event
from mailsync.models.mail import EmailAccount
from mailsync.worker.errors import PermanentJobError
from mailsync.worker.jobs.deps import JobDependencies
from mailsync.worker.scheduler import JobContext

logger = logging.getLogger("mailsync.worker")


def _fan_out(ctx: JobContext, *, user_id: UUID | None, reason: str) -> int:
    stmt = select(EmailAccount.id).where(EmailAccount.sync_enabled.is_(True)).order_by(EmailAccount.created_at)
    if user_id is not None:
        stmt = stmt.where(EmailAccount.user_id == user_id)
    account_ids = list(ctx.session.execute(stmt).scalars().all())

    enqueued = 0
    for account_id in account_ids:
        if ctx.scheduler.enqueue_account_sync(ctx.session, account_id, reason=reason) is not None:
            enqueued += 1
    ctx.session.commit()

    log_event(
        logger,
        "jobs.fan_out",
        job_id=ctx.job_id,
        job_type=ctx.job_type,
        accounts=len(account_ids),
        enqueued=enqueued,
    )
    return enqueued


def all_accounts_sync(ctx: JobContext, *, deps: JobDependencies) -> None:
    _ = deps
    user_id_raw = ctx.payload.get("user_id")
    user_id: UUID | None = None
    if user_id_raw:
        try:
            user_id = UUID(str(user_id_raw))
        except ValueError as e:
            raise PermanentJobError("all_accounts_sync payload has invalid user_id") from e
    _fan_out(ctx, user_id=user_id, reason="manual_all")


def periodic_sync(ctx: JobContext, *, deps: JobDependencies) -> None:
    _ = deps
    _fan_out(ctx, user_id=None, reason="periodic")
