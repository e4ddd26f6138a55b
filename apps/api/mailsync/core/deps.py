from __future__ import annotations

from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from mailsync.core.config import get_settings
from mailsync.db.session import get_session
from mailsync.models.identity import User
from mailsync.services.sync import ProviderOptions
from mailsync.worker.scheduler import JobScheduler


def require_user(
    request: Request,
    session: Session = Depends(get_session),
) -> User:
    # Authentication happens at the gateway; it forwards the resolved user id.
    settings = get_settings()
    raw = (request.headers.get(settings.USER_ID_HEADER) or "").strip()
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        user_id = UUID(raw)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id") from e

    user = session.get(User, user_id)
    if user is None or user.is_disabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User disabled or missing")
    return user


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


def get_provider_options() -> ProviderOptions:
    # Overridden in tests to inject fake IMAP/SMTP connection factories.
    return {}
