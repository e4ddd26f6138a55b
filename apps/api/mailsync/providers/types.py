from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from mailsync.models.enums import MessageFolder


@dataclass(frozen=True)
class CredentialBundle:
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AccountProfile:
    email_address: str
    display_name: str | None


@dataclass(frozen=True)
class CanonicalMessage:
    provider_message_id: str
    rfc_message_id: str | None
    in_reply_to: str | None
    references: list[str]
    from_address: str
    from_name: str | None
    to_addresses: list[str]
    cc_addresses: list[str]
    bcc_addresses: list[str]
    subject: str
    body_text: str | None
    body_html: str | None
    snippet: str | None
    folder: MessageFolder
    labels: list[str]
    is_read: bool
    is_starred: bool
    has_attachments: bool
    sent_at: datetime | None
    received_at: datetime | None


@dataclass(frozen=True)
class ParseFailure:
    native_id: str
    folder: str | None
    error: str


@dataclass(frozen=True)
class MessageBatch:
    messages: list[CanonicalMessage]
    failures: list[ParseFailure] = field(default_factory=list)


@dataclass(frozen=True)
class OutboundEnvelope:
    from_address: str
    from_name: str | None
    to: list[str]
    cc: list[str]
    bcc: list[str]
    subject: str
    body_text: str | None
    body_html: str | None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SentMessage:
    provider_message_id: str
    # RFC 5322 Message-ID, used to recognise the copy that later shows up in the sent folder.
    rfc_message_id: str | None = None


@dataclass(frozen=True)
class PasswordConnection:
    email_address: str
    username: str
    password: str
    imap_host: str
    imap_port: int
    smtp_host: str
    smtp_port: int
