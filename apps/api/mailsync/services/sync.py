from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsync.core.config import Settings, get_settings
from mailsync.core.logging import log_event
from mailsync.core.metrics import observe_account_sync, observe_message_ingested
from mailsync.models.enums import MessageFolder, ProviderKind
from mailsync.models.mail import EmailAccount, EmailMessage
from mailsync.providers.base import MailProvider
from mailsync.providers.errors import MessageParseError, ProviderAuthError, ProviderError
from mailsync.providers.registry import get_provider
from mailsync.providers.types import CanonicalMessage
from mailsync.services.credentials import CredentialStore
from mailsync.services.linking import EntityLinker, Notifier
from mailsync.services.threads import ThreadResolver

logger = logging.getLogger("mailsync.sync")

ProviderFactory = Callable[..., MailProvider]
# Extra constructor arguments per provider kind, e.g. IMAP/SMTP connection factories.
ProviderOptions = dict[ProviderKind, dict[str, Any]]

# Overlap re-listed on incremental syncs so late-arriving mail is not missed.
_INCREMENTAL_OVERLAP = timedelta(days=1)


def build_provider(
    session: Session,
    account: EmailAccount,
    *,
    http: httpx.Client,
    settings: Settings,
    clock: Callable[[], datetime],
    provider_factory: ProviderFactory | None = None,
    provider_options: ProviderOptions | None = None,
) -> MailProvider:
    factory = provider_factory or get_provider
    return factory(
        account,
        http=http,
        credentials=CredentialStore(session, settings=settings, clock=clock),
        settings=settings,
        clock=clock,
        **(provider_options or {}).get(ProviderKind(account.provider), {}),
    )


class AccountNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class SyncResult:
    account_id: UUID
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    skipped_disabled: bool = False


class SyncOrchestrator:
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
    ) -> None:
        self._session = session
        self._http = http
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._provider_factory = provider_factory
        self._provider_options = provider_options or {}
        self._threads = ThreadResolver(session)
        self._linker = EntityLinker(session, notifier=notifier)

    def provider_for(self, account: EmailAccount) -> MailProvider:
        return build_provider(
            self._session,
            account,
            http=self._http,
            settings=self._settings,
            clock=self._clock,
            provider_factory=self._provider_factory,
            provider_options=self._provider_options,
        )

    def sync_window_start(self, account: EmailAccount, provider: MailProvider) -> datetime:
        if account.last_sync_at is not None:
            return account.last_sync_at - _INCREMENTAL_OVERLAP
        return self._clock() - provider.initial_window()

    def sync_account(self, account_id: UUID) -> SyncResult:
        account = self._session.get(EmailAccount, account_id)
        if account is None:
            raise AccountNotFoundError(f"Email account {account_id} not found")
        if not account.sync_enabled:
            return SyncResult(account_id=account_id, skipped_disabled=True)

        provider = self.provider_for(account)
        since = self.sync_window_start(account, provider)
        provider_name = str(account.provider)
        started = time.monotonic()
        log_event(logger, "sync.account.started", account_id=account_id, provider=provider_name, since=since)

        fetched_at = self._clock()
        try:
            batch = provider.list_messages(account, since=since)
        except ProviderError as e:
            self._session.rollback()
            account = self._session.get(EmailAccount, account_id)
            if account is not None:
                account.last_sync_error = str(e)[:500]
                if isinstance(e, ProviderAuthError):
                    account.requires_reauth = True
                self._session.commit()
            log_event(
                logger,
                "sync.account.failed",
                level=logging.WARNING,
                account_id=account_id,
                provider=provider_name,
                status_code=e.status_code,
                auth=isinstance(e, ProviderAuthError),
                error=str(e),
            )
            raise

        created = updated = unchanged = skipped = 0
        for failure in batch.failures:
            skipped += 1
            observe_message_ingested(provider=provider_name, outcome="skipped")
            log_event(
                logger,
                "sync.message.skipped",
                level=logging.WARNING,
                account_id=account_id,
                native_id=failure.native_id,
                folder=failure.folder,
                error=failure.error,
            )

        # Adapter order is preserved.
        for canonical in batch.messages:
            try:
                outcome = self._ingest_one(account, canonical, fetched_at=fetched_at)
            except (MessageParseError, ValueError) as e:
                skipped += 1
                outcome = "skipped"
                log_event(
                    logger,
                    "sync.message.skipped",
                    level=logging.WARNING,
                    account_id=account_id,
                    native_id=canonical.provider_message_id,
                    error=str(e),
                )
            if outcome == "created":
                created += 1
            elif outcome == "updated":
                updated += 1
            elif outcome == "unchanged":
                unchanged += 1
            observe_message_ingested(provider=provider_name, outcome=outcome)

        account.last_sync_at = self._clock()
        account.last_sync_error = None
        account.requires_reauth = False
        self._session.commit()

        result = SyncResult(
            account_id=account_id,
            created=created,
            updated=updated,
            unchanged=unchanged,
            skipped=skipped,
        )
        duration = time.monotonic() - started
        observe_account_sync(provider=provider_name, duration_seconds=duration)
        log_event(
            logger,
            "sync.account.completed",
            account_id=account_id,
            provider=provider_name,
            created=created,
            updated=updated,
            unchanged=unchanged,
            skipped=skipped,
            duration_ms=int(duration * 1000),
        )
        return result

    def sync_all_accounts(self, *, user_id: UUID | None = None) -> dict[UUID, SyncResult | Exception]:
        stmt = select(EmailAccount.id).where(EmailAccount.sync_enabled.is_(True)).order_by(EmailAccount.created_at)
        if user_id is not None:
            stmt = stmt.where(EmailAccount.user_id == user_id)
        account_ids = list(self._session.execute(stmt).scalars().all())

        results: dict[UUID, SyncResult | Exception] = {}
        for account_id in account_ids:
            try:
                results[account_id] = self.sync_account(account_id)
            except Exception as e:  # noqa: BLE001
                # One account's failure must not stop the others.
                self._session.rollback()
                results[account_id] = e
        return results

    def _ingest_one(self, account: EmailAccount, canonical: CanonicalMessage, *, fetched_at: datetime) -> str:
        try:
            with self._session.begin_nested():
                existing = self._find_existing(account.id, canonical)
                if existing is not None:
                    return self._apply_flags(account, existing, canonical, fetched_at=fetched_at)
                self._insert(account, canonical, fetched_at=fetched_at)
                return "created"
        except IntegrityError:
            # Another worker inserted the same dedup key first; take the update path.
            with self._session.begin_nested():
                existing = self._find_existing(account.id, canonical)
                if existing is None:
                    raise
                return self._apply_flags(account, existing, canonical, fetched_at=fetched_at)

    def _find_existing(self, account_id: UUID, canonical: CanonicalMessage) -> EmailMessage | None:
        existing = (
            self._session.execute(
                select(EmailMessage).where(
                    EmailMessage.account_id == account_id,
                    EmailMessage.provider_message_id == canonical.provider_message_id,
                )
            )
            .scalars()
            .first()
        )
        if existing is not None or not canonical.rfc_message_id or canonical.folder != MessageFolder.sent:
            return existing

        # A message we sent is stored under the id the send call returned; the
        # sent folder copy can carry another one (SMTP relays, Graph drafts moved
        # to Sent Items). Adopt the row by Message-ID instead of storing it twice.
        adopted = (
            self._session.execute(
                select(EmailMessage).where(
                    EmailMessage.account_id == account_id,
                    EmailMessage.folder == MessageFolder.sent,
                    or_(
                        EmailMessage.rfc_message_id == canonical.rfc_message_id,
                        EmailMessage.provider_message_id == canonical.rfc_message_id,
                    ),
                )
            )
            .scalars()
            .first()
        )
        if adopted is not None:
            adopted.provider_message_id = canonical.provider_message_id
        return adopted

    def _insert(self, account: EmailAccount, canonical: CanonicalMessage, *, fetched_at: datetime) -> EmailMessage:
        message = EmailMessage(
            account_id=account.id,
            provider_message_id=canonical.provider_message_id,
            rfc_message_id=canonical.rfc_message_id,
            in_reply_to=canonical.in_reply_to,
            reference_ids=list(canonical.references),
            from_address=canonical.from_address,
            from_name=canonical.from_name,
            to_addresses=list(canonical.to_addresses),
            cc_addresses=list(canonical.cc_addresses),
            bcc_addresses=list(canonical.bcc_addresses),
            subject=canonical.subject,
            body_text=canonical.body_text,
            body_html=canonical.body_html,
            snippet=canonical.snippet,
            folder=canonical.folder,
            labels=list(canonical.labels),
            is_read=canonical.is_read,
            is_starred=canonical.is_starred,
            has_attachments=canonical.has_attachments,
            sent_at=canonical.sent_at,
            received_at=canonical.received_at,
            fetched_at=fetched_at,
        )
        self._threads.assign(message)
        self._session.add(message)
        self._session.flush()
        self._linker.link_message(message, exclude=[account.email_address])
        return message

    def _apply_flags(
        self,
        account: EmailAccount,
        message: EmailMessage,
        canonical: CanonicalMessage,
        *,
        fetched_at: datetime,
    ) -> str:
        if message.fetched_at is not None and message.fetched_at > fetched_at:
            # A newer snapshot already wrote these flags.
            return "unchanged"

        changed = (
            message.is_read != canonical.is_read
            or message.is_starred != canonical.is_starred
            or list(message.labels or []) != list(canonical.labels)
        )
        message.is_read = canonical.is_read
        message.is_starred = canonical.is_starred
        message.labels = list(canonical.labels)
        message.fetched_at = fetched_at

        if (
            message.folder == MessageFolder.sent
            and message.person_id is None
            and message.lead_id is None
            and message.deal_id is None
        ):
            # Contacts created after the first sync still get linked to earlier sent mail.
            self._linker.link_message(message, exclude=[account.email_address])

        self._session.flush()
        return "updated" if changed else "unchanged"
