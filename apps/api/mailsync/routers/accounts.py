from __future__ import annotations

import logging
from urllib.parse import urlencode
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from mailsync.core.config import get_settings
from mailsync.core.deps import get_provider_options, get_scheduler, require_user
from mailsync.core.http import get_http_client
from mailsync.core.logging import log_event
from mailsync.db.session import get_session
from mailsync.models.enums import JobType, ProviderKind
from mailsync.models.identity import User
from mailsync.providers.types import PasswordConnection
from mailsync.schemas.accounts import (
    EmailAccountOut,
    EmailAccountUpdateRequest,
    OAuthStartResponse,
    PasswordAccountRequest,
    SyncEnqueueResponse,
)
from mailsync.services.accounts import (
    complete_oauth,
    connect_password_account,
    disconnect_account,
    list_accounts,
    set_default_account,
    start_oauth,
    trigger_account_sync,
    trigger_user_sync,
    update_account,
)
from mailsync.services.sync import ProviderOptions
from mailsync.worker.scheduler import JobScheduler

logger = logging.getLogger("mailsync.api")

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _settings_redirect(**params: str) -> RedirectResponse:
    settings = get_settings()
    url = f"{settings.FRONTEND_URL}/settings/email-accounts?{urlencode(params)}"
    return RedirectResponse(
        url=url,
        status_code=status.HTTP_303_SEE_OTHER,
        headers={"Cache-Control": "no-store"},
    )


@router.get("", response_model=list[EmailAccountOut])
def accounts_list(
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> list[EmailAccountOut]:
    return list_accounts(session=session, user_id=user.id)


@router.post("/oauth/{provider}/start", response_model=OAuthStartResponse)
def oauth_start(
    provider: ProviderKind,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    provider_options: ProviderOptions = Depends(get_provider_options),
) -> OAuthStartResponse:
    url = start_oauth(
        user=user,
        provider=provider,
        session=session,
        http_client=http_client,
        provider_options=provider_options,
    )
    return OAuthStartResponse(authorization_url=url)


@router.get("/oauth/callback")
def oauth_callback(
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    scheduler: JobScheduler = Depends(get_scheduler),
    provider_options: ProviderOptions = Depends(get_provider_options),
) -> RedirectResponse:
    # The browser lands here from the provider; every outcome goes back to the UI.
    if error:
        return _settings_redirect(error=error[:64])
    if not code or not state:
        return _settings_redirect(error="missing_code")

    try:
        account = complete_oauth(
            session=session,
            http_client=http_client,
            scheduler=scheduler,
            code=code,
            state=state,
            provider_options=provider_options,
        )
        session.commit()
    except HTTPException as e:
        session.rollback()
        log_event(logger, "accounts.oauth.failed", level=logging.WARNING, detail=e.detail)
        return _settings_redirect(error=str(e.detail))
    except Exception as e:  # noqa: BLE001
        # The browser is mid-redirect; send it back to the UI instead of a 500 page.
        session.rollback()
        log_event(logger, "accounts.oauth.failed", level=logging.ERROR, detail="internal_error", error=type(e).__name__)
        return _settings_redirect(error="internal_error")

    return _settings_redirect(connected=str(account.provider), account_id=str(account.id))


@router.post("/password", response_model=EmailAccountOut, status_code=status.HTTP_201_CREATED)
def password_connect(
    payload: PasswordAccountRequest,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    scheduler: JobScheduler = Depends(get_scheduler),
    provider_options: ProviderOptions = Depends(get_provider_options),
) -> EmailAccountOut:
    connection = PasswordConnection(
        email_address=payload.email_address,
        username=payload.username or payload.email_address,
        password=payload.password.get_secret_value(),
        imap_host=payload.imap_host,
        imap_port=payload.imap_port,
        smtp_host=payload.smtp_host,
        smtp_port=payload.smtp_port,
    )
    account = connect_password_account(
        session=session,
        http_client=http_client,
        scheduler=scheduler,
        user=user,
        connection=connection,
        display_name=payload.display_name,
        provider_options=provider_options,
    )
    session.commit()
    return account


@router.post("/sync", response_model=SyncEnqueueResponse)
def accounts_sync_all(
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> SyncEnqueueResponse:
    job_id = trigger_user_sync(session=session, scheduler=scheduler, user_id=user.id)
    session.commit()
    return SyncEnqueueResponse(job_type=JobType.all_accounts_sync.value, job_id=job_id)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def account_disconnect(
    account_id: UUID,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> None:
    disconnect_account(session=session, user_id=user.id, account_id=account_id)
    session.commit()


@router.patch("/{account_id}", response_model=EmailAccountOut)
def account_update(
    account_id: UUID,
    payload: EmailAccountUpdateRequest,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> EmailAccountOut:
    account = update_account(
        session=session,
        user_id=user.id,
        account_id=account_id,
        sync_enabled=payload.sync_enabled,
        display_name=payload.display_name,
    )
    session.commit()
    return account


@router.post("/{account_id}/default", response_model=EmailAccountOut)
def account_set_default(
    account_id: UUID,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> EmailAccountOut:
    account = set_default_account(session=session, user_id=user.id, account_id=account_id)
    session.commit()
    return account


@router.post("/{account_id}/sync", response_model=SyncEnqueueResponse)
def account_sync(
    account_id: UUID,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> SyncEnqueueResponse:
    job_id = trigger_account_sync(
        session=session,
        scheduler=scheduler,
        user_id=user.id,
        account_id=account_id,
    )
    session.commit()
    return SyncEnqueueResponse(job_type=JobType.account_sync.value, job_id=job_id)
