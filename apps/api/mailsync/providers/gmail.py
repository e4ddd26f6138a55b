from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from mailsync.core.logging import log_event
from mailsync.models.enums import MessageFolder, ProviderKind
from mailsync.models.mail import EmailAccount
from mailsync.providers.base import OAuthMailProvider, _parse_epoch_millis
from mailsync.providers.errors import MessageParseError, ProviderError
from mailsync.providers.rfc822 import (
    build_mime_message,
    lower_addresses,
    make_snippet,
    parse_date,
    split_address,
    split_references,
)
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

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
GMAIL_MESSAGES_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Most specific first: a sent message can also carry INBOX when mailed to self.
_FOLDER_BY_LABEL = (
    ("SENT", MessageFolder.sent),
    ("DRAFT", MessageFolder.draft),
    ("TRASH", MessageFolder.trash),
    ("INBOX", MessageFolder.inbox),
)


def folder_from_labels(label_ids: list[str]) -> MessageFolder:
    labels = set(label_ids)
    for label, folder in _FOLDER_BY_LABEL:
        if label in labels:
            return folder
    return MessageFolder.archive


def _decode_b64url(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class GmailProvider(OAuthMailProvider):
    kind = ProviderKind.gmail
    authorize_url = GOOGLE_OAUTH_AUTHORIZE_URL
    scopes = GMAIL_SCOPES

    @property
    def token_url(self) -> str:
        return GOOGLE_OAUTH_TOKEN_URL

    @property
    def client_id(self) -> str:
        return self._settings.GOOGLE_CLIENT_ID

    @property
    def client_secret(self) -> str:
        return self._settings.GOOGLE_CLIENT_SECRET

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",
            # Refresh tokens are often only returned once unless we force consent.
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def fetch_profile(self, access_token: str) -> AccountProfile:
        res = self._get(GMAIL_PROFILE_URL, access_token=access_token)
        self._raise_for_status(res, default_message="Gmail profile lookup failed")
        payload = self._json(res, default_message="Gmail profile response is not JSON")
        email = (payload.get("emailAddress") or "").strip().lower()
        if not email:
            raise ProviderError(status_code=502, message="Gmail profile missing emailAddress")
        return AccountProfile(email_address=email, display_name=None)

    def list_messages(self, account: EmailAccount, *, since: datetime) -> MessageBatch:
        access_token = self._access_token(account)
        cap = self._settings.SYNC_MAX_MESSAGES_PER_FOLDER
        page_size = max(1, min(500, self._settings.SYNC_BATCH_SIZE))

        message_ids: list[str] = []
        page_token: str | None = None
        while len(message_ids) < cap:
            params: dict[str, object] = {
                "q": f"after:{since:%Y/%m/%d}",
                "includeSpamTrash": "true",
                "maxResults": min(page_size, cap - len(message_ids)),
            }
            if page_token:
                params["pageToken"] = page_token
            res = self._get(GMAIL_MESSAGES_URL, access_token=access_token, params=params)
            self._raise_for_status(res, default_message="Gmail message list failed")
            payload = self._json(res, default_message="Gmail message list response is not JSON")
            for item in payload.get("messages") or []:
                msg_id = item.get("id")
                if msg_id:
                    message_ids.append(msg_id)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        messages: list[CanonicalMessage] = []
        failures: list[ParseFailure] = []
        for msg_id in message_ids[:cap]:
            res = self._get(
                f"{GMAIL_MESSAGES_URL}/{msg_id}",
                access_token=access_token,
                params={"format": "full"},
            )
            if res.status_code == 404:
                # Deleted between list and fetch.
                continue
            self._raise_for_status(res, default_message="Gmail message fetch failed")
            try:
                native = res.json()
            except ValueError:
                failures.append(ParseFailure(native_id=msg_id, folder=None, error="Message body is not JSON"))
                continue
            try:
                messages.append(self.parse(native))
            except MessageParseError as e:
                failures.append(ParseFailure(native_id=msg_id, folder=None, error=str(e)))

        return MessageBatch(messages=messages, failures=failures)

    def send(self, account: EmailAccount, envelope: OutboundEnvelope) -> SentMessage:
        access_token = self._access_token(account)
        mime = build_mime_message(envelope)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")
        res = self._post(GMAIL_SEND_URL, access_token=access_token, json={"raw": raw})
        self._raise_for_status(res, default_message="Gmail send failed")
        provider_id = self._json(res, default_message="Gmail send response is not JSON").get("id")
        if not provider_id:
            raise ProviderError(status_code=502, message="Gmail send response missing id")
        log_event(logger, "providers.sent", provider=self.kind, account_id=account.id)
        return SentMessage(provider_message_id=str(provider_id), rfc_message_id=str(mime["Message-ID"]))

    def modify_flags(
        self,
        account: EmailAccount,
        provider_message_id: str,
        *,
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> None:
        add: list[str] = []
        remove: list[str] = []
        if is_read is not None:
            (remove if is_read else add).append("UNREAD")
        if is_starred is not None:
            (add if is_starred else remove).append("STARRED")
        if not (add or remove):
            return
        access_token = self._access_token(account)
        res = self._post(
            f"{GMAIL_MESSAGES_URL}/{provider_message_id}/modify",
            access_token=access_token,
            json={"addLabelIds": add, "removeLabelIds": remove},
        )
        self._raise_for_status(res, default_message="Gmail label update failed")
        log_event(logger, "providers.flags_modified", provider=self.kind, account_id=account.id)

    def parse(self, native: Any) -> CanonicalMessage:
        if not isinstance(native, dict) or not native.get("id"):
            raise MessageParseError("Gmail message payload missing id")
        payload = native.get("payload")
        if not isinstance(payload, dict):
            raise MessageParseError(f"Gmail message {native['id']} has no payload")

        headers: dict[str, list[str]] = {}
        for header in payload.get("headers") or []:
            name = str(header.get("name") or "").lower()
            if name:
                headers.setdefault(name, []).append(str(header.get("value") or ""))

        def first(name: str) -> str | None:
            values = headers.get(name)
            return values[0] if values else None

        from_address, from_name = split_address(first("from"))
        if not from_address:
            raise MessageParseError(f"Gmail message {native['id']} has no sender address")

        text_parts: list[str] = []
        html_parts: list[str] = []
        has_attachments = self._collect_parts(payload, text_parts, html_parts)
        body_text = "\n\n".join(text_parts) or None
        body_html = sanitize_html("\n\n".join(html_parts) or None)

        label_ids = [v for v in native.get("labelIds") or [] if isinstance(v, str)]
        return CanonicalMessage(
            provider_message_id=str(native["id"]),
            rfc_message_id=(first("message-id") or "").strip() or None,
            in_reply_to=(first("in-reply-to") or "").strip() or None,
            references=split_references(headers.get("references", [])),
            from_address=from_address,
            from_name=from_name,
            to_addresses=lower_addresses(headers.get("to", [])),
            cc_addresses=lower_addresses(headers.get("cc", [])),
            bcc_addresses=lower_addresses(headers.get("bcc", [])),
            subject=first("subject") or "",
            body_text=body_text,
            body_html=body_html,
            snippet=make_snippet(body_text or native.get("snippet")),
            folder=folder_from_labels(label_ids),
            labels=label_ids,
            is_read="UNREAD" not in label_ids,
            is_starred="STARRED" in label_ids,
            has_attachments=has_attachments,
            sent_at=parse_date(first("date")),
            received_at=_parse_epoch_millis(native.get("internalDate")),
        )

    def _collect_parts(self, part: dict, text_parts: list[str], html_parts: list[str]) -> bool:
        has_attachments = False
        if part.get("filename") and (part.get("body") or {}).get("attachmentId"):
            return True

        mime_type = str(part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and mime_type in {"text/plain", "text/html"}:
            try:
                decoded = _decode_b64url(data).decode("utf-8", errors="replace").strip()
            except (binascii.Error, ValueError) as e:
                raise MessageParseError("Gmail body part is not valid base64url") from e
            if decoded:
                (text_parts if mime_type == "text/plain" else html_parts).append(decoded)

        for child in part.get("parts") or []:
            if isinstance(child, dict):
                has_attachments = self._collect_parts(child, text_parts, html_parts) or has_attachments
        return has_attachments
