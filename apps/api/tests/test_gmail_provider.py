from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from sqlalchemy.orm import Session

from mailsync.models.enums import MessageFolder
from mailsync.models.mail import EmailAccount
from mailsync.providers.errors import MessageParseError, ProviderAuthError
from mailsync.providers.gmail import GmailProvider, folder_from_labels
from mailsync.providers.types import CredentialBundle, OutboundEnvelope
from mailsync.services.credentials import CredentialStore


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(
    msg_id: str,
    *,
    sender: str = "Alice <alice@client.test>",
    to: str = "owner@crm.test",
    subject: str = "Quote",
    labels: list[str] | None = None,
    text: str = "Hello there",
    html: str | None = None,
) -> dict:
    parts = [{"mimeType": "text/plain", "body": {"data": _b64(text)}}]
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": _b64(html)}})
    return {
        "id": msg_id,
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "internalDate": "1772366400000",
        "snippet": text,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": to},
                {"name": "Subject", "value": subject},
                {"name": "Message-ID", "value": f"<{msg_id}@mail.test>"},
                {"name": "Date", "value": "Sun, 01 Mar 2026 12:00:00 +0000"},
            ],
            "parts": parts,
        },
    }


@pytest.fixture()
def gmail_account(db_session: Session, make_user, make_account) -> EmailAccount:
    user_id = make_user()
    account_id = make_account(user_id)
    account = db_session.get(EmailAccount, account_id)
    CredentialStore(db_session).store_oauth_tokens(
        account,
        CredentialBundle(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        ),
    )
    db_session.commit()
    return account


def test_folder_from_labels_prefers_sent_over_inbox() -> None:
    assert folder_from_labels(["INBOX", "SENT"]) == MessageFolder.sent
    assert folder_from_labels(["DRAFT"]) == MessageFolder.draft
    assert folder_from_labels(["TRASH", "INBOX"]) == MessageFolder.trash
    assert folder_from_labels(["INBOX"]) == MessageFolder.inbox
    assert folder_from_labels(["CATEGORY_UPDATES"]) == MessageFolder.archive


def test_parse_maps_headers_flags_and_sanitizes_html() -> None:
    provider = GmailProvider(http=httpx.Client())
    native = gmail_message(
        "m1",
        labels=["INBOX", "STARRED"],
        html='<p onclick="x()">Hi <script>alert(1)</script><a href="javascript:evil()">x</a></p>',
    )

    msg = provider.parse(native)

    assert msg.provider_message_id == "m1"
    assert msg.rfc_message_id == "<m1@mail.test>"
    assert msg.from_address == "alice@client.test"
    assert msg.from_name == "Alice"
    assert msg.to_addresses == ["owner@crm.test"]
    assert msg.folder == MessageFolder.inbox
    assert msg.is_read is True
    assert msg.is_starred is True
    assert msg.body_text == "Hello there"
    assert "<script" not in msg.body_html
    assert "onclick" not in msg.body_html
    assert "javascript:" not in msg.body_html
    assert msg.received_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_parse_rejects_message_without_sender() -> None:
    provider = GmailProvider(http=httpx.Client())
    native = gmail_message("m2", sender="")
    with pytest.raises(MessageParseError):
        provider.parse(native)


def test_list_messages_pages_and_collects_parse_failures(db_session: Session, gmail_account: EmailAccount) -> None:
    seen_queries: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer access-1"
        path = request.url.path
        if path.endswith("/users/me/messages"):
            query = {k: v[0] for k, v in parse_qs(urlsplit(str(request.url)).query).items()}
            seen_queries.append(query)
            if "pageToken" not in query:
                return httpx.Response(200, json={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"})
            return httpx.Response(200, json={"messages": [{"id": "c"}, {"id": "gone"}]})
        msg_id = path.rsplit("/", 1)[-1]
        if msg_id == "gone":
            return httpx.Response(404, json={"error": {"message": "not found"}})
        if msg_id == "b":
            return httpx.Response(200, json=gmail_message("b", sender=""))
        return httpx.Response(200, json=gmail_message(msg_id))

    provider = GmailProvider(
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        credentials=CredentialStore(db_session),
    )
    batch = provider.list_messages(gmail_account, since=datetime(2026, 2, 22, tzinfo=UTC))

    assert [m.provider_message_id for m in batch.messages] == ["a", "c"]
    assert [f.native_id for f in batch.failures] == ["b"]
    assert seen_queries[0]["q"] == "after:2026/02/22"
    assert seen_queries[1]["pageToken"] == "p2"


def test_list_messages_unauthorized_raises_auth_error(db_session: Session, gmail_account: EmailAccount) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

    provider = GmailProvider(
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        credentials=CredentialStore(db_session),
    )
    with pytest.raises(ProviderAuthError):
        provider.list_messages(gmail_account, since=datetime(2026, 2, 22, tzinfo=UTC))


def test_send_posts_raw_mime_and_returns_provider_id(db_session: Session, gmail_account: EmailAccount) -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/messages/send")
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "sent-1", "threadId": "t1"})

    provider = GmailProvider(
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        credentials=CredentialStore(db_session),
    )
    sent = provider.send(
        gmail_account,
        OutboundEnvelope(
            from_address="owner@crm.test",
            from_name="Owner",
            to=["alice@client.test"],
            cc=[],
            bcc=[],
            subject="Proposal",
            body_text="See attached",
            body_html=None,
        ),
    )

    assert sent.provider_message_id == "sent-1"
    raw = base64.urlsafe_b64decode(captured["raw"] + "=" * (-len(captured["raw"]) % 4)).decode("utf-8")
    assert f"Message-ID: {sent.rfc_message_id}" in raw
    assert "Subject: Proposal" in raw
    assert "alice@client.test" in raw


def test_authorization_url_requests_offline_access() -> None:
    provider = GmailProvider(http=httpx.Client())
    url = provider.authorization_url("state-1")
    params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["state"] == "state-1"
    assert params["redirect_uri"] == "http://api.test/accounts/oauth/callback"


def test_exchange_code_rejected_grant_is_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    provider = GmailProvider(http=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(ProviderAuthError):
        provider.exchange_code("bad-code")


def test_modify_flags_maps_to_label_changes(db_session: Session, gmail_account: EmailAccount) -> None:
    captured: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"id": "m1", "labelIds": ["INBOX", "STARRED"]})

    provider = GmailProvider(
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        credentials=CredentialStore(db_session),
    )
    provider.modify_flags(gmail_account, "m1", is_read=True, is_starred=True)
    provider.modify_flags(gmail_account, "m1")

    assert captured == [
        ("/gmail/v1/users/me/messages/m1/modify", {"addLabelIds": ["STARRED"], "removeLabelIds": ["UNREAD"]})
    ]
