from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import quote, urlsplit
from uuid import UUID

from bleach.linkifier import Linker
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.core.logging import log_event
from mailsync.core.metrics import observe_tracking_event
from mailsync.models.enums import TrackingEventType
from mailsync.models.mail import EmailMessage, EmailTrackingEvent

logger = logging.getLogger("mailsync.tracking")

# 1x1 transparent PNG.
PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

_BODY_OPEN_RE = re.compile(r"<body\b[^>]*>", re.IGNORECASE)
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)
TRACKED_SCHEMES = ("http", "https")


class InvalidTrackingIdError(ValueError):
    pass


def encode_tracking_id(message_id: UUID) -> str:
    return base64.urlsafe_b64encode(str(message_id).encode("ascii")).decode("ascii").rstrip("=")


def decode_tracking_id(tracking_id: str) -> UUID:
    padding = "=" * (-len(tracking_id) % 4)
    try:
        return UUID(base64.urlsafe_b64decode(tracking_id + padding).decode("ascii"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise InvalidTrackingIdError("Malformed tracking id") from e


def click_url(*, base_url: str, message_id: UUID, destination: str) -> str:
    return f"{base_url}/track/click/{encode_tracking_id(message_id)}?url={quote(destination, safe='')}"


def pixel_url(*, base_url: str, message_id: UUID) -> str:
    return f"{base_url}/track/pixel/{message_id}"


def _track_links(html: str, *, message_id: UUID, base_url: str) -> str:
    def _rewrite_href(attrs: dict, new: bool = False) -> dict:
        href = attrs.get((None, "href"))
        if not href or "/track/click/" in href:
            return attrs
        # Relative, mailto: and tel: links cannot go through the redirect.
        if urlsplit(href).scheme.lower() not in TRACKED_SCHEMES:
            return attrs
        attrs[(None, "href")] = click_url(base_url=base_url, message_id=message_id, destination=href)
        return attrs

    # The parser hands callbacks decoded attribute values, so "&amp;" arrives as "&".
    return Linker(callbacks=[_rewrite_href], parse_email=False).linkify(html)


def inject_tracking(html: str, *, message_id: UUID, base_url: str) -> str:
    """Rewrite http(s) links to the click redirect and add the open pixel."""
    pixel = (
        f'<img src="{pixel_url(base_url=base_url, message_id=message_id)}" '
        'width="1" height="1" style="display:none;border:0" alt="" />'
    )
    opening = _BODY_OPEN_RE.search(html)
    closes = list(_BODY_CLOSE_RE.finditer(html))
    if opening is None or not closes or closes[-1].start() < opening.end():
        return _track_links(html, message_id=message_id, base_url=base_url) + pixel

    # Only the body goes through the fragment parser; it would drop <html> and <head>.
    start, end = opening.end(), closes[-1].start()
    body = _track_links(html[start:end], message_id=message_id, base_url=base_url)
    return html[:start] + body + pixel + html[end:]


def _record(
    session: Session,
    *,
    message_id: UUID,
    event_type: TrackingEventType,
    url: str | None,
    ip_address: str | None,
    user_agent: str | None,
) -> bool:
    if session.get(EmailMessage, message_id) is None:
        return False
    session.add(
        EmailTrackingEvent(
            message_id=message_id,
            event_type=event_type,
            url=url,
            ip_address=(ip_address or None) and ip_address[:64],
            user_agent=user_agent,
        )
    )
    session.commit()
    observe_tracking_event(event_type=event_type.value)
    log_event(logger, f"tracking.{event_type.value}", message_id=message_id, url=url)
    return True


def record_open(session: Session, *, message_id: UUID, ip_address: str | None, user_agent: str | None) -> bool:
    return _record(
        session,
        message_id=message_id,
        event_type=TrackingEventType.open,
        url=None,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def record_click(
    session: Session,
    *,
    tracking_id: str,
    url: str,
    ip_address: str | None,
    user_agent: str | None,
) -> bool:
    message_id = decode_tracking_id(tracking_id)
    return _record(
        session,
        message_id=message_id,
        event_type=TrackingEventType.click,
        url=url,
        ip_address=ip_address,
        user_agent=user_agent,
    )


@dataclass(frozen=True)
class TrackingStats:
    message_id: UUID
    total_opens: int = 0
    unique_opens: int = 0
    total_clicks: int = 0
    unique_clicks: int = 0
    first_opened_at: datetime | None = None
    last_opened_at: datetime | None = None
    clicks_by_url: dict[str, int] = field(default_factory=dict)


def tracking_stats(session: Session, *, message_id: UUID) -> TrackingStats:
    events = (
        session.execute(
            select(EmailTrackingEvent)
            .where(EmailTrackingEvent.message_id == message_id)
            .order_by(EmailTrackingEvent.created_at)
        )
        .scalars()
        .all()
    )
    opens = [e for e in events if e.event_type == TrackingEventType.open]
    clicks = [e for e in events if e.event_type == TrackingEventType.click]
    clicks_by_url: dict[str, int] = {}
    for event in clicks:
        if event.url:
            clicks_by_url[event.url] = clicks_by_url.get(event.url, 0) + 1

    return TrackingStats(
        message_id=message_id,
        total_opens=len(opens),
        unique_opens=len({e.ip_address for e in opens if e.ip_address}),
        total_clicks=len(clicks),
        unique_clicks=len({e.ip_address for e in clicks if e.ip_address}),
        first_opened_at=opens[0].created_at if opens else None,
        last_opened_at=opens[-1].created_at if opens else None,
        clicks_by_url=clicks_by_url,
    )
