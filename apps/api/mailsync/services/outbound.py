from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from mailsync.core.config import Settings, get_settings
from mailsync.core.logging import log_event
from mailsync.models.enums import JobType, MessageFolder
from mailsync.models.mail import EmailAccount, EmailMessage
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.providers.rfc822 import make_snippet
from mailsync.providers.types import OutboundEnvelope, SentMessage
from mailsync.services.linking import EntityLinker, LinkResult, Notifier
from mailsync.services.sync import ProviderFactory, ProviderOptions, build_provider
from mailsync.services.threads import ThreadResolver
from mailsync.services.tracking import inject_tracking

if TYPE_CHECKING:
    from mailsync.worker.scheduler import JobScheduler

logger = logging.getLogger("mailsync.outbound")


class OutboundError(ValueError):
    pass


@dataclass(frozen=True)
class OutboundDraft:
    to: list[str]
    subject: str
    body_text: str | None = None
    body_html: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    track: bool = True
    scheduled_at: datetime | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SendResult:
    message_id: UUID
    status: str  # sent|scheduled|queued
    provider_message_id: str | None = None
    link: LinkResult | None = None


def _clean(addresses: list[str]) -> list[str]:
    out: list[str] = []
    for address in addresses:
        address = (address or "").strip().lower()
        if address and address not in out:
            out.append(address)
    return out


def _has_header_break(value: str | None) -> bool:
    return value is not None and ("\r" in value or "\n" in value)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive timestamps are taken as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_retryable_send_error(error: ProviderError) -> bool:
    if isinstance(error, ProviderAuthError):
        return False
    return error.status_code >= 500 or error.status_code == 429


class OutboundService:
    def __init__(
        self,
        session: Session,
        *,
        http: httpx.Client,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        provider_factory: ProviderFactory | None = None,
        provider_options: ProviderOptions | None = None,
        notifier: Notifier | None = None,
        scheduler: JobScheduler | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._scheduler = scheduler
        self._http = http
        self._provider_factory = provider_factory
        self._provider_options = provider_options
        self._threads = ThreadResolver(session)
        self._linker = EntityLinker(session, notifier=notifier)

    def send_message(self, *, user_id: UUID, account_id: UUID, draft: OutboundDraft) -> SendResult:
        account = self._session.get(EmailAccount, account_id)
        if account is None or account.user_id != user_id:
            raise LookupError(f"Email account {account_id} not found")

        to = _clean(draft.to)
        if not to:
            raise OutboundError("At least one recipient is required")
        if not (draft.body_text or draft.body_html):
            raise OutboundError("Message body is empty")
        header_values = [draft.subject, draft.in_reply_to, *draft.to, *draft.cc, *draft.bcc, *draft.references]
        if any(_has_header_break(v) for v in header_values):
            raise OutboundError("Header fields must not contain line breaks")

        now = self._clock()
        scheduled_at = _as_utc(draft.scheduled_at)
        scheduled = scheduled_at is not None and scheduled_at > now
        message = EmailMessage(
            account_id=account.id,
            provider_message_id=None,
            in_reply_to=draft.in_reply_to,
            reference_ids=list(draft.references),
            from_address=account.email_address,
            from_name=account.display_name,
            to_addresses=to,
            cc_addresses=_clean(draft.cc),
            bcc_addresses=_clean(draft.bcc),
            subject=draft.subject or "",
            body_text=draft.body_text,
            body_html=draft.body_html,
            snippet=make_snippet(draft.body_text),
            folder=MessageFolder.outbox,
            labels=[],
            is_read=True,
            tracking_enabled=draft.track,
            scheduled_at=scheduled_at if scheduled else None,
        )
        self._session.add(message)
        self._session.flush()

        if scheduled:
            self._enqueue_delivery(message.id, account.id, run_at=scheduled_at)
            self._session.commit()
            log_event(logger, "outbound.scheduled", message_id=message.id, run_at=scheduled_at)
            return SendResult(message_id=message.id, status="scheduled")

        # Persist the outbox copy before talking to the provider.
        message_id = message.id
        self._session.commit()
        try:
            return self.deliver(message_id)
        except ProviderError as e:
            if not is_retryable_send_error(e):
                raise
            if self._scheduler is None:
                self.return_to_drafts(message_id)
                raise
            # The outbox row stays put; a worker retries it with the usual backoff.
            run_at = self._clock() + timedelta(seconds=self._settings.JOB_BACKOFF_BASE_SECONDS)
            self._enqueue_delivery(message_id, account_id, run_at=run_at)
            self._session.commit()
            log_event(logger, "outbound.retry_queued", message_id=message_id, run_at=run_at)
            return SendResult(message_id=message_id, status="queued")

    def _enqueue_delivery(self, message_id: UUID, account_id: UUID, *, run_at: datetime | None) -> None:
        if self._scheduler is None:
            raise RuntimeError("Deferred sends need a job scheduler")
        self._scheduler.enqueue(
            self._session,
            job_type=JobType.outbound_send,
            account_id=account_id,
            payload={"message_id": str(message_id), "account_id": str(account_id)},
            dedupe_key=f"outbound_send:{message_id}",
            run_at=run_at,
        )

    def deliver(self, message_id: UUID) -> SendResult:
        """Hand an outbox row to its provider and file it under sent.

        Failures that retrying cannot fix (revoked credentials, rejected or
        unencodable content) move the row back to drafts so it never lingers
        in the outbox; retryable ones leave it there for the caller to requeue.
        """
        message = self._session.get(EmailMessage, message_id)
        if message is None:
            raise LookupError(f"Email message {message_id} not found")
        if message.folder != MessageFolder.outbox:
            return SendResult(
                message_id=message.id,
                status="sent",
                provider_message_id=message.provider_message_id,
            )
        account = self._session.get(EmailAccount, message.account_id)
        if account is None:
            raise LookupError(f"Email account {message.account_id} not found")

        body_html = message.body_html
        if body_html and message.tracking_enabled:
            body_html = inject_tracking(body_html, message_id=message.id, base_url=self._settings.API_BASE_URL)

        envelope = OutboundEnvelope(
            from_address=account.email_address,
            from_name=account.display_name,
            to=list(message.to_addresses),
            cc=list(message.cc_addresses),
            bcc=list(message.bcc_addresses),
            subject=message.subject,
            body_text=message.body_text,
            body_html=body_html,
            in_reply_to=message.in_reply_to,
            references=list(message.reference_ids or []),
        )
        provider = build_provider(
            self._session,
            account,
            http=self._http,
            settings=self._settings,
            clock=self._clock,
            provider_factory=self._provider_factory,
            provider_options=self._provider_options,
        )
        account_id = account.id
        try:
            sent: SentMessage = provider.send(account, envelope)
        except ProviderError as e:
            self._session.rollback()
            if not is_retryable_send_error(e):
                self.return_to_drafts(message_id)
            log_event(
                logger,
                "outbound.failed",
                level=logging.WARNING,
                message_id=message_id,
                account_id=account_id,
                status_code=e.status_code,
                error=str(e),
            )
            raise
        except (ValueError, TypeError) as e:
            # The MIME encoder refuses header values it cannot fold safely.
            self._session.rollback()
            self.return_to_drafts(message_id)
            log_event(
                logger,
                "outbound.failed",
                level=logging.WARNING,
                message_id=message_id,
                account_id=account_id,
                error=type(e).__name__,
            )
            raise OutboundError(f"Message could not be encoded: {e}") from e

        # Credential refresh may have committed/rolled back; reload our rows.
        message = self._session.get(EmailMessage, message_id)
        account = self._session.get(EmailAccount, message.account_id)
        now = self._clock()
        message.provider_message_id = sent.provider_message_id
        if sent.rfc_message_id:
            message.rfc_message_id = sent.rfc_message_id
        message.folder = MessageFolder.sent
        message.sent_at = now
        message.scheduled_at = None
        message.fetched_at = now
        self._threads.assign(message)
        link = self._linker.link_message(message, exclude=[account.email_address])
        self._session.commit()

        log_event(
            logger,
            "outbound.sent",
            message_id=message.id,
            account_id=account.id,
            provider=account.provider,
            unknown_recipient=link.is_unknown,
        )
        return SendResult(
            message_id=message.id,
            status="sent",
            provider_message_id=sent.provider_message_id,
            link=link,
        )

    def return_to_drafts(self, message_id: UUID) -> None:
        message = self._session.get(EmailMessage, message_id)
        if message is None or message.folder != MessageFolder.outbox:
            return
        message.folder = MessageFolder.draft
        message.scheduled_at = None
        self._session.commit()
