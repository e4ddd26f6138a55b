from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

from mailsync.core.logging import log_event
from mailsync.models.enums import MessageFolder, ProviderKind
from mailsync.models.mail import EmailAccount
from mailsync.providers.base import OAuthMailProvider, _parse_iso
from mailsync.providers.errors import MessageParseError, ProviderError
from mailsync.providers.rfc822 import make_snippet
from mailsync.providers.sanitize import sanitize_html
from mailsync.providers.types import (
    AccountProfile,
    CanonicalMessage,
    MessageBatch,
    OutboundEnvelope,
    ParseFailure,
    SentMessage,
)

logger = logging.getLogger("mailsync.providers")

MICROSOFT_LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
# Without this Graph re-keys a message whenever it changes folder (e.g. draft -> Sent Items).
GRAPH_IMMUTABLE_ID_PREFER = 'IdType="ImmutableId"'

GRAPH_SCOPES = [
    "offline_access",
    "openid",
    "email",
    "profile",
    "https://graph.microsoft.com/User.Read",
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/Mail.Send",
]

# Well-known folder names walked on every sync, in this order.
GRAPH_FOLDERS: tuple[tuple[str, MessageFolder], ...] = (
    ("sentitems", MessageFolder.sent),
    ("inbox", MessageFolder.inbox),
    ("drafts", MessageFolder.draft),
    ("deleteditems", MessageFolder.trash),
    ("archive", MessageFolder.archive),
)

_SELECT_FIELDS = ",".join(
    [
        "id",
        "internetMessageId",
        "subject",
        "from",
        "toRecipients",
        "ccRecipients",
        "bccRecipients",
        "body",
        "bodyPreview",
        "isRead",
        "isDraft",
        "flag",
        "hasAttachments",
        "sentDateTime",
        "receivedDateTime",
        "categories",
        "internetMessageHeaders",
    ]
)


@dataclass(frozen=True)
class GraphNativeMessage:
    folder: MessageFolder
    payload: dict[str, Any]


def _recipients(values: object) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in values or []:  # type: ignore[union-attr]
        address = ((item or {}).get("emailAddress") or {}).get("address")
        address = (address or "").strip().lower()
        if address and address not in seen:
            seen.add(address)
            out.append(address)
    return out


def _graph_recipients(addresses: list[str]) -> list[dict]:
    return [{"emailAddress": {"address": a}} for a in addresses]


class OutlookProvider(OAuthMailProvider):
    kind = ProviderKind.outlook
    scopes = GRAPH_SCOPES

    @property
    def _tenant_base(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._settings.MICROSOFT_TENANT_ID}/oauth2/v2.0"

    @property
    def token_url(self) -> str:
        return f"{self._tenant_base}/token"

    @property
    def client_id(self) -> str:
        return self._settings.MICROSOFT_CLIENT_ID

    @property
    def client_secret(self) -> str:
        return self._settings.MICROSOFT_CLIENT_SECRET

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {**super()._auth_headers(access_token), "Prefer": GRAPH_IMMUTABLE_ID_PREFER}

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": state,
            "prompt": "select_account",
        }
        return f"{self._tenant_base}/authorize?{urlencode(params)}"

    def fetch_profile(self, access_token: str) -> AccountProfile:
        res = self._get(f"{GRAPH_BASE_URL}/me", access_token=access_token)
        self._raise_for_status(res, default_message="Graph profile lookup failed")
        payload = self._json(res, default_message="Graph profile response is not JSON")
        email = (payload.get("mail") or payload.get("userPrincipalName") or "").strip().lower()
        if not email:
            raise ProviderError(status_code=502, message="Graph profile missing mail address")
        return AccountProfile(email_address=email, display_name=payload.get("displayName") or None)

    def list_messages(self, account: EmailAccount, *, since: datetime) -> MessageBatch:
        access_token = self._access_token(account)
        cap = self._settings.SYNC_MAX_MESSAGES_PER_FOLDER
        page_size = max(1, self._settings.SYNC_BATCH_SIZE)
        since_iso = since.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

        messages: list[CanonicalMessage] = []
        failures: list[ParseFailure] = []
        for folder_name, folder in GRAPH_FOLDERS:
            url: str | None = f"{GRAPH_BASE_URL}/me/mailFolders/{folder_name}/messages"
            params: dict[str, object] | None = {
                "$filter": f"receivedDateTime ge {since_iso}",
                "$orderby": "receivedDateTime desc",
                "$top": page_size,
                "$select": _SELECT_FIELDS,
            }
            fetched = 0
            while url and fetched < cap:
                res = self._get(url, access_token=access_token, params=params)
                if res.status_code == 404:
                    # Mailboxes without an archive folder answer 404; skip it.
                    log_event(
                        logger,
                        "providers.folder.missing",
                        provider=self.kind,
                        account_id=account.id,
                        folder=folder_name,
                    )
                    break
                self._raise_for_status(res, default_message="Graph message list failed")
                payload = self._json(res, default_message="Graph message list response is not JSON")
                for item in payload.get("value") or []:
                    if fetched >= cap:
                        break
                    fetched += 1
                    try:
                        messages.append(self.parse(GraphNativeMessage(folder=folder, payload=item)))
                    except MessageParseError as e:
                        failures.append(
                            ParseFailure(native_id=str(item.get("id") or ""), folder=folder_name, error=str(e))
                        )
                # nextLink already carries the query string.
                url = payload.get("@odata.nextLink")
                params = None

        return MessageBatch(messages=messages, failures=failures)

    def send(self, account: EmailAccount, envelope: OutboundEnvelope) -> SentMessage:
        access_token = self._access_token(account)
        draft = {
            "subject": envelope.subject,
            "body": {
                "contentType": "HTML" if envelope.body_html else "Text",
                "content": envelope.body_html or envelope.body_text or "",
            },
            "toRecipients": _graph_recipients(envelope.to),
            "ccRecipients": _graph_recipients(envelope.cc),
            "bccRecipients": _graph_recipients(envelope.bcc),
        }
        res = self._post(f"{GRAPH_BASE_URL}/me/messages", access_token=access_token, json=draft)
        self._raise_for_status(res, default_message="Graph draft creation failed")
        created = self._json(res, default_message="Graph draft response is not JSON")
        draft_id = created.get("id")
        if not draft_id:
            raise ProviderError(status_code=502, message="Graph draft response missing id")

        res = self._post(f"{GRAPH_BASE_URL}/me/messages/{draft_id}/send", access_token=access_token)
        self._raise_for_status(res, default_message="Graph send failed")
        log_event(logger, "providers.sent", provider=self.kind, account_id=account.id)
        # Immutable ids survive the move to Sent Items, so the draft id is the sent copy's id too.
        return SentMessage(
            provider_message_id=str(draft_id),
            rfc_message_id=created.get("internetMessageId") or None,
        )

    def modify_flags(
        self,
        account: EmailAccount,
        provider_message_id: str,
        *,
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> None:
        patch: dict[str, object] = {}
        if is_read is not None:
            patch["isRead"] = is_read
        if is_starred is not None:
            patch["flag"] = {"flagStatus": "flagged" if is_starred else "notFlagged"}
        if not patch:
            return
        access_token = self._access_token(account)
        res = self._patch(f"{GRAPH_BASE_URL}/me/messages/{provider_message_id}", access_token=access_token, json=patch)
        self._raise_for_status(res, default_message="Graph message update failed")
        log_event(logger, "providers.flags_modified", provider=self.kind, account_id=account.id)

    def parse(self, native: Any) -> CanonicalMessage:
        if not isinstance(native, GraphNativeMessage):
            raise MessageParseError("Unexpected Graph message shape")
        payload = native.payload
        if not payload.get("id"):
            raise MessageParseError("Graph message missing id")

        sender = (payload.get("from") or {}).get("emailAddress") or {}
        from_address = (sender.get("address") or "").strip().lower()
        if not from_address and native.folder != MessageFolder.draft:
            raise MessageParseError(f"Graph message {payload['id']} has no sender address")

        body = payload.get("body") or {}
        content = body.get("content") or None
        is_html = str(body.get("contentType") or "").lower() == "html"
        body_text = None if is_html else content
        body_html = sanitize_html(content) if is_html else None

        headers = {
            str(h.get("name") or "").lower(): str(h.get("value") or "")
            for h in payload.get("internetMessageHeaders") or []
        }
        references = [r for r in headers.get("references", "").split() if r]
        flag_status = str((payload.get("flag") or {}).get("flagStatus") or "").lower()
        folder = MessageFolder.draft if payload.get("isDraft") else native.folder

        return CanonicalMessage(
            provider_message_id=str(payload["id"]),
            rfc_message_id=payload.get("internetMessageId") or None,
            in_reply_to=headers.get("in-reply-to") or None,
            references=references,
            from_address=from_address,
            from_name=sender.get("name") or None,
            to_addresses=_recipients(payload.get("toRecipients")),
            cc_addresses=_recipients(payload.get("ccRecipients")),
            bcc_addresses=_recipients(payload.get("bccRecipients")),
            subject=payload.get("subject") or "",
            body_text=body_text,
            body_html=body_html,
            snippet=make_snippet(payload.get("bodyPreview") or body_text),
            folder=folder,
            labels=[c for c in payload.get("categories") or [] if isinstance(c, str)],
            is_read=bool(payload.get("isRead")),
            is_starred=flag_status == "flagged",
            has_attachments=bool(payload.get("hasAttachments")),
            sent_at=_parse_iso(payload.get("sentDateTime")),
            received_at=_parse_iso(payload.get("receivedDateTime")),
        )
