from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

import httpx
from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mailsync.core.config import Settings, get_settings
from mailsync.core.logging import log_event
from mailsync.models.enums import MessageFolder
from mailsync.models.mail import EmailAccount, EmailMessage
from mailsync.services.sync import ProviderFactory, ProviderOptions, build_provider

logger = logging.getLogger("mailsync.messages")


def list_messages(
    *,
    session: Session,
    user_id: UUID,
    folder: MessageFolder | None = None,
    account_id: UUID | None = None,
    limit: int = 50,
) -> list[EmailMessage]:
    stmt = (
        select(EmailMessage)
        .join(EmailAccount, EmailAccount.id == EmailMessage.account_id)
        .where(EmailAccount.user_id == user_id)
        .order_by(
            func.coalesce(EmailMessage.received_at, EmailMessage.sent_at, EmailMessage.created_at).desc(),
            EmailMessage.id.desc(),
        )
        .limit(limit)
    )
    if folder is not None:
        stmt = stmt.where(EmailMessage.folder == folder)
    if account_id is not None:
        stmt = stmt.where(EmailMessage.account_id == account_id)
    return list(session.execute(stmt).scalars().all())


def get_owned_message(*, session: Session, user_id: UUID, message_id: UUID) -> EmailMessage:
    message = session.get(EmailMessage, message_id)
    if message is not None:
        account = session.get(EmailAccount, message.account_id)
        if account is not None and account.user_id == user_id:
            return message
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email message not found")


def update_message_flags(
    *,
    session: Session,
    message: EmailMessage,
    http: httpx.Client,
    is_read: bool | None = None,
    is_starred: bool | None = None,
    settings: Settings | None = None,
    clock: Callable[[], datetime] | None = None,
    provider_factory: ProviderFactory | None = None,
    provider_options: ProviderOptions | None = None,
) -> EmailMessage:
    """Change read/starred state in the mailbox first, then mirror it locally.

    Rows that never reached the provider (outbox, drafts) only change locally.
    """
    settings = settings or get_settings()
    clock = clock or (lambda: datetime.now(UTC))
    message_id = message.id
    account = session.get(EmailAccount, message.account_id)
    if account is None:
        raise LookupError(f"Email account {message.account_id} not found")

    wanted_read = is_read if is_read is not None and is_read != message.is_read else None
    wanted_star = is_starred if is_starred is not None and is_starred != message.is_starred else None
    if message.provider_message_id and (wanted_read is not None or wanted_star is not None):
        provider = build_provider(
            session,
            account,
            http=http,
            settings=settings,
            clock=clock,
            provider_factory=provider_factory,
            provider_options=provider_options,
        )
        provider.modify_flags(account, message.provider_message_id, is_read=wanted_read, is_starred=wanted_star)
        # Credential refresh may have committed; reload before writing.
        message = session.get(EmailMessage, message_id)

    if is_read is not None:
        message.is_read = is_read
    if is_starred is not None:
        message.is_starred = is_starred
    # Older sync snapshots must not flip the flags back.
    message.fetched_at = clock()
    session.commit()
    log_event(
        logger,
        "messages.flags_updated",
        message_id=message.id,
        account_id=message.account_id,
        is_read=message.is_read,
        is_starred=message.is_starred,
    )
    return message
