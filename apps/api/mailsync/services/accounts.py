from __future__ import annotations

import logging
from uuid import UUID

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.core.config import get_settings
from mailsync.core.logging import log_event
from mailsync.core.security import InvalidStateError, decode_oauth_state, encode_oauth_state
from mailsync.models.enums import ConnectionMode, JobType, ProviderKind
from mailsync.models.identity import User
from mailsync.models.mail import EmailAccount
from mailsync.providers.base import MailProvider
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.providers.registry import provider_for_kind
from mailsync.providers.types import PasswordConnection
from mailsync.services.credentials import CredentialStore
from mailsync.services.sync import ProviderOptions
from mailsync.worker.scheduler import JobScheduler

logger = logging.getLogger("mailsync.accounts")

_OAUTH_PROVIDERS = {ProviderKind.gmail, ProviderKind.outlook}


def _provider(
    kind: ProviderKind,
    *,
    session: Session,
    http_client: httpx.Client,
    provider_options: ProviderOptions | None,
) -> MailProvider:
    return provider_for_kind(
        kind,
        http=http_client,
        credentials=CredentialStore(session),
        settings=get_settings(),
        **(provider_options or {}).get(kind, {}),
    )


def _enabled_default(session: Session, *, user_id: UUID, exclude_id: UUID | None = None) -> EmailAccount | None:
    stmt = select(EmailAccount).where(
        EmailAccount.user_id == user_id,
        EmailAccount.is_default.is_(True),
        EmailAccount.sync_enabled.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(EmailAccount.id != exclude_id)
    return session.execute(stmt).scalars().first()


def _reconcile_default(session: Session, account: EmailAccount) -> None:
    # At most one enabled default per user; the first connected account becomes it.
    other = _enabled_default(session, user_id=account.user_id, exclude_id=account.id)
    if other is not None:
        account.is_default = False
    elif account.sync_enabled:
        account.is_default = True


def _upsert_account(
    session: Session,
    *,
    user_id: UUID,
    email_address: str,
    provider: ProviderKind,
    connection_mode: ConnectionMode,
    display_name: str | None,
) -> tuple[EmailAccount, bool]:
    email_address = email_address.strip().lower()
    account = (
        session.execute(
            select(EmailAccount).where(
                EmailAccount.user_id == user_id,
                EmailAccount.email_address == email_address,
            )
        )
        .scalars()
        .first()
    )
    created = account is None
    if account is None:
        account = EmailAccount(
            user_id=user_id,
            email_address=email_address,
            provider=provider,
            connection_mode=connection_mode,
            is_default=False,
        )
        session.add(account)

    account.provider = provider
    account.connection_mode = connection_mode
    account.display_name = display_name or account.display_name
    account.sync_enabled = True
    account.requires_reauth = False
    account.last_sync_error = None
    session.flush()
    _reconcile_default(session, account)
    session.flush()
    return account, created


def start_oauth(
    *,
    user: User,
    provider: ProviderKind,
    session: Session,
    http_client: httpx.Client,
    provider_options: ProviderOptions | None = None,
) -> str:
    if provider not in _OAUTH_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provider does not use OAuth")
    adapter = _provider(provider, session=session, http_client=http_client, provider_options=provider_options)
    if not getattr(adapter, "client_id", ""):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{provider} OAuth is not configured",
        )
    state = encode_oauth_state(user_id=user.id, provider=provider.value)
    return adapter.authorization_url(state)


def complete_oauth(
    *,
    session: Session,
    http_client: httpx.Client,
    scheduler: JobScheduler,
    code: str,
    state: str,
    provider_options: ProviderOptions | None = None,
) -> EmailAccount:
    try:
        decoded = decode_oauth_state(state)
        provider = ProviderKind(decoded.provider)
    except (InvalidStateError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_state") from e
    if provider not in _OAUTH_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_state")

    user = session.get(User, decoded.user_id)
    if user is None or user.is_disabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unknown_user")

    adapter = _provider(provider, session=session, http_client=http_client, provider_options=provider_options)
    try:
        bundle = adapter.exchange_code(code)
        if not bundle.access_token:
            raise ProviderAuthError(status_code=502, message="Token response missing access token")
        profile = adapter.fetch_profile(bundle.access_token)
    except ProviderAuthError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="token_exchange_failed") from e
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="provider_unavailable") from e

    account, created = _upsert_account(
        session,
        user_id=user.id,
        email_address=profile.email_address,
        provider=provider,
        connection_mode=ConnectionMode.oauth,
        display_name=profile.display_name,
    )
    CredentialStore(session).store_oauth_tokens(account, bundle)
    scheduler.enqueue_account_sync(session, account.id, reason="initial" if created else "reconnect")

    log_event(
        logger,
        "accounts.connected",
        account_id=account.id,
        user_id=user.id,
        provider=provider,
        created=created,
    )
    return account


def connect_password_account(
    *,
    session: Session,
    http_client: httpx.Client,
    scheduler: JobScheduler,
    user: User,
    connection: PasswordConnection,
    display_name: str | None = None,
    provider_options: ProviderOptions | None = None,
) -> EmailAccount:
    adapter = _provider(ProviderKind.imap, session=session, http_client=http_client, provider_options=provider_options)
    try:
        adapter.test_connection(connection)
    except ProviderAuthError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Mailbox login rejected") from e
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Mail server unreachable") from e

    account, created = _upsert_account(
        session,
        user_id=user.id,
        email_address=connection.email_address,
        provider=ProviderKind.imap,
        connection_mode=ConnectionMode.password,
        display_name=display_name,
    )
    account.imap_host = connection.imap_host
    account.imap_port = connection.imap_port
    account.smtp_host = connection.smtp_host
    account.smtp_port = connection.smtp_port
    account.username = connection.username
    CredentialStore(session).store_password(account, connection.password)
    scheduler.enqueue_account_sync(session, account.id, reason="initial" if created else "reconnect")

    log_event(
        logger,
        "accounts.connected",
        account_id=account.id,
        user_id=user.id,
        provider=ProviderKind.imap,
        created=created,
    )
    return account


def list_accounts(*, session: Session, user_id: UUID) -> list[EmailAccount]:
    return list(
        session.execute(
            select(EmailAccount).where(EmailAccount.user_id == user_id).order_by(EmailAccount.created_at)
        )
        .scalars()
        .all()
    )


def get_owned_account(*, session: Session, user_id: UUID, account_id: UUID) -> EmailAccount:
    account = session.get(EmailAccount, account_id)
    if account is None or account.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email account not found")
    return account


def disconnect_account(*, session: Session, user_id: UUID, account_id: UUID) -> None:
    account = get_owned_account(session=session, user_id=user_id, account_id=account_id)
    was_default = account.is_default
    # Messages, threads, credentials and jobs go with it (ON DELETE CASCADE).
    session.delete(account)
    session.flush()

    if was_default:
        successor = (
            session.execute(
                select(EmailAccount)
                .where(EmailAccount.user_id == user_id, EmailAccount.sync_enabled.is_(True))
                .order_by(EmailAccount.created_at)
            )
            .scalars()
            .first()
        )
        if successor is not None:
            successor.is_default = True
            session.flush()

    log_event(logger, "accounts.disconnected", account_id=account_id, user_id=user_id)


def set_default_account(*, session: Session, user_id: UUID, account_id: UUID) -> EmailAccount:
    account = get_owned_account(session=session, user_id=user_id, account_id=account_id)
    if not account.sync_enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Disabled accounts cannot be the default")

    others = (
        session.execute(
            select(EmailAccount).where(
                EmailAccount.user_id == user_id,
                EmailAccount.id != account.id,
                EmailAccount.is_default.is_(True),
            )
        )
        .scalars()
        .all()
    )
    for other in others:
        other.is_default = False
    # Flush the unsets first so the partial unique index never sees two defaults.
    session.flush()
    account.is_default = True
    session.flush()
    return account


def update_account(
    *,
    session: Session,
    user_id: UUID,
    account_id: UUID,
    sync_enabled: bool | None = None,
    display_name: str | None = None,
) -> EmailAccount:
    account = get_owned_account(session=session, user_id=user_id, account_id=account_id)
    if display_name is not None:
        account.display_name = display_name.strip() or None
    if sync_enabled is not None and sync_enabled != account.sync_enabled:
        if sync_enabled and account.is_default and _enabled_default(
            session, user_id=user_id, exclude_id=account.id
        ):
            account.is_default = False
        account.sync_enabled = sync_enabled
    session.flush()
    return account


def trigger_account_sync(
    *,
    session: Session,
    scheduler: JobScheduler,
    user_id: UUID,
    account_id: UUID,
) -> UUID | None:
    account = get_owned_account(session=session, user_id=user_id, account_id=account_id)
    if not account.sync_enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync is disabled for this account")
    return scheduler.enqueue_account_sync(session, account.id, reason="manual")


def trigger_user_sync(*, session: Session, scheduler: JobScheduler, user_id: UUID) -> UUID | None:
    return scheduler.enqueue(
        session,
        job_type=JobType.all_accounts_sync,
        payload={"user_id": str(user_id), "reason": "manual"},
        dedupe_key=f"all_accounts_sync:{user_id}",
    )
