from __future__ import annotations

import json
import logging
import re
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.main import create_app
from mailsync.models.enums import MessageFolder, TrackingEventType
from mailsync.models.mail import EmailMessage, EmailTrackingEvent
from mailsync.services.tracking import (
    PIXEL_PNG,
    InvalidTrackingIdError,
    decode_tracking_id,
    encode_tracking_id,
    inject_tracking,
)


def _sent_message(db_session: Session, account_id) -> EmailMessage:  # type: ignore[no-untyped-def]
    message = EmailMessage(
        account_id=account_id,
        provider_message_id="sent-1",
        from_address="owner@crm.test",
        to_addresses=["jo@client.test"],
        cc_addresses=[],
        bcc_addresses=[],
        subject="Deck",
        folder=MessageFolder.sent,
        labels=[],
        tracking_enabled=True,
    )
    db_session.add(message)
    db_session.commit()
    return message


def test_tracking_id_round_trip_and_rejects_garbage() -> None:
    message_id = uuid4()
    assert decode_tracking_id(encode_tracking_id(message_id)) == message_id
    with pytest.raises(InvalidTrackingIdError):
        decode_tracking_id("not-a-tracking-id")


def test_inject_tracking_rewrites_links_and_adds_pixel() -> None:
    message_id = uuid4()
    html = (
        "<html><body>"
        '<a href="https://example.test/pricing?a=1&b=2">Pricing</a>'
        '<a href="mailto:sales@crm.test">Mail us</a>'
        '<a href="#top">Top</a>'
        "</body></html>"
    )

    out = inject_tracking(html, message_id=message_id, base_url="http://api.test")

    tracking_id = encode_tracking_id(message_id)
    assert f"http://api.test/track/click/{tracking_id}?url=https%3A%2F%2Fexample.test%2Fpricing" in out
    assert 'href="mailto:sales@crm.test"' in out
    assert 'href="#top"' in out
    assert out.index(f"/track/pixel/{message_id}") < out.index("</body>")

    # Already tracked links are left alone on a second pass.
    again = inject_tracking(out, message_id=message_id, base_url="http://api.test")
    assert again.count("/track/click/") == out.count("/track/click/")


def test_inject_tracking_appends_pixel_without_body_tag() -> None:
    message_id = uuid4()
    out = inject_tracking("<p>Hi</p>", message_id=message_id, base_url="http://api.test")
    assert out.startswith("<p>Hi</p>")
    assert f"/track/pixel/{message_id}" in out


def test_inject_tracking_decodes_entities_before_wrapping() -> None:
    message_id = uuid4()
    html = '<p><a href="https://example.test/p?a=1&amp;b=2">Pricing</a></p>'

    out = inject_tracking(html, message_id=message_id, base_url="http://api.test")

    match = re.search(r'href="http://api\.test(/track/click/[^"]+)"', out)
    assert match is not None
    assert "url=https%3A%2F%2Fexample.test%2Fp%3Fa%3D1%26b%3D2" in match.group(1)
    assert "amp%3B" not in out

    client = TestClient(create_app(), follow_redirects=False)
    res = client.get(match.group(1))
    assert res.status_code == 302
    assert res.headers["location"] == "https://example.test/p?a=1&b=2"


def test_inject_tracking_leaves_non_http_links_alone() -> None:
    message_id = uuid4()
    html = (
        "<html><head><title>Offer</title></head><body>"
        '<a href="www.example.test/pricing">Pricing</a>'
        '<a href="/docs">Docs</a>'
        '<a href="tel:+15550100">Call</a>'
        "</body></html>"
    )

    out = inject_tracking(html, message_id=message_id, base_url="http://api.test")

    assert "/track/click/" not in out
    assert 'href="www.example.test/pricing"' in out
    assert 'href="/docs"' in out
    assert 'href="tel:+15550100"' in out
    assert out.startswith("<html><head><title>Offer</title></head><body>")
    assert out.endswith("</body></html>")


def test_pixel_records_open_and_never_fails(db_session: Session, make_user, make_account) -> None:
    account_id = make_account(make_user())
    message = _sent_message(db_session, account_id)
    client = TestClient(create_app())

    res = client.get(f"/track/pixel/{message.id}", headers={"user-agent": "MailClient/1.0"})
    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"
    assert "no-store" in res.headers["cache-control"]
    assert res.content == PIXEL_PNG

    garbage = client.get("/track/pixel/not-a-uuid")
    assert garbage.status_code == 200
    assert garbage.content == PIXEL_PNG

    events = db_session.execute(select(EmailTrackingEvent)).scalars().all()
    assert [(e.event_type, e.user_agent) for e in events] == [(TrackingEventType.open, "MailClient/1.0")]


def test_click_records_and_redirects(db_session: Session, make_user, make_account) -> None:
    account_id = make_account(make_user())
    message = _sent_message(db_session, account_id)
    client = TestClient(create_app(), follow_redirects=False)

    res = client.get(
        f"/track/click/{encode_tracking_id(message.id)}",
        params={"url": "https://example.test/a"},
    )
    assert res.status_code == 302
    assert res.headers["location"] == "https://example.test/a"

    event = db_session.execute(select(EmailTrackingEvent)).scalar_one()
    assert event.event_type == TrackingEventType.click
    assert event.url == "https://example.test/a"


def test_click_with_bad_id_still_redirects_and_missing_url_is_400() -> None:
    client = TestClient(create_app(), follow_redirects=False)

    res = client.get("/track/click/@@@", params={"url": "https://example.test/b"})
    assert res.status_code == 302
    assert res.headers["location"] == "https://example.test/b"

    assert client.get("/track/click/abc").status_code == 400


def test_stats_are_owner_only(db_session: Session, make_user, make_account) -> None:
    owner_id = make_user()
    other_id = make_user("other@crm.test")
    message = _sent_message(db_session, make_account(owner_id))
    client = TestClient(create_app(), follow_redirects=False)

    for ip in ("10.0.0.1", "10.0.0.1", "10.0.0.2"):
        client.get(f"/track/pixel/{message.id}", headers={"x-forwarded-for": ip})
    client.get(f"/track/click/{encode_tracking_id(message.id)}", params={"url": "https://example.test/c"})

    res = client.get(f"/track/stats/{message.id}", headers={"x-user-id": str(owner_id)})
    assert res.status_code == 200
    body = res.json()
    assert body["total_opens"] == 3
    assert body["unique_opens"] == 2
    assert body["total_clicks"] == 1
    assert body["clicks_by_url"] == {"https://example.test/c": 1}

    denied = client.get(f"/track/stats/{message.id}", headers={"x-user-id": str(other_id)})
    assert denied.status_code == 404


def test_tracking_failures_log_one_event_name(caplog: pytest.LogCaptureFixture) -> None:
    client = TestClient(create_app(), follow_redirects=False)

    with caplog.at_level(logging.WARNING, logger="mailsync.tracking"):
        client.get("/track/pixel/not-a-uuid")
        client.get("/track/click/@@@", params={"url": "https://example.test/b"})

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "mailsync.tracking"]
    assert [(e["event"], e["kind"]) for e in events] == [("tracking.failed", "open"), ("tracking.failed", "click")]
