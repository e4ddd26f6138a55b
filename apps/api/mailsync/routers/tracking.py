from __future__ import annotations

import logging
from urllib.parse import urlsplit
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.core.deps import require_user
from mailsync.core.logging import log_event
from mailsync.db.session import get_session
from mailsync.models.identity import User
from mailsync.schemas.tracking import TrackingStatsOut
from mailsync.services.messages import get_owned_message
from mailsync.services.tracking import (
    PIXEL_PNG,
    InvalidTrackingIdError,
    record_click,
    record_open,
    tracking_stats,
)

logger = logging.getLogger("mailsync.tracking")

router = APIRouter(prefix="/track", tags=["tracking"])

_NO_CACHE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _client_ip(request: Request) -> str | None:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


@router.get("/pixel/{message_id}")
def tracking_pixel(
    message_id: str,
    request: Request,
    session: Session = Depends(get_session),
) -> Response:
    # Mail clients get the image whatever happens on our side.
    try:
        record_open(
            session,
            message_id=UUID(message_id),
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except (ValueError, SQLAlchemyError) as e:
        session.rollback()
        log_event(logger, "tracking.failed", level=logging.WARNING, kind="open", message_id=message_id, error=str(e))
    return Response(content=PIXEL_PNG, media_type="image/png", headers=_NO_CACHE)


@router.get("/click/{tracking_id}")
def tracking_click(
    tracking_id: str,
    request: Request,
    url: str | None = None,
    session: Session = Depends(get_session),
) -> RedirectResponse:
    if not url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing url")
    if urlsplit(url).scheme.lower() not in ("http", "https"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported url")

    try:
        record_click(
            session,
            tracking_id=tracking_id,
            url=url,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except (InvalidTrackingIdError, SQLAlchemyError) as e:
        session.rollback()
        log_event(logger, "tracking.failed", level=logging.WARNING, kind="click", tracking_id=tracking_id, error=str(e))
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND, headers=_NO_CACHE)


@router.get("/stats/{message_id}", response_model=TrackingStatsOut)
def tracking_message_stats(
    message_id: UUID,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> TrackingStatsOut:
    get_owned_message(session=session, user_id=user.id, message_id=message_id)
    stats = tracking_stats(session, message_id=message_id)
    return TrackingStatsOut(
        message_id=stats.message_id,
        total_opens=stats.total_opens,
        unique_opens=stats.unique_opens,
        total_clicks=stats.total_clicks,
        unique_clicks=stats.unique_clicks,
        first_opened_at=stats.first_opened_at,
        last_opened_at=stats.last_opened_at,
        clicks_by_url=stats.clicks_by_url,
    )
