from __future__ import annotations

import logging
import smtplib
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from mailsync.core.logging import log_event
from mailsync.models.enums import ConnectionMode, MessageFolder, ProviderKind
from mailsync.models.mail import EmailAccount
from mailsync.providers.base import MailProvider
from mailsync.providers.errors import MessageParseError, ProviderAuthError, ProviderError
from mailsync.providers.rfc822 import build_mime_message, make_snippet, parse_rfc822
from mailsync.providers.types import (
    CanonicalMessage,
    MessageBatch,
    OutboundEnvelope,
    ParseFailure,
    PasswordConnection,
    SentMessage,
)

logger = logging.getLogger("mailsync.providers")

# Most specific name first; servers disagree on special-use folder names.
FOLDER_CANDIDATES: tuple[tuple[MessageFolder, tuple[str, ...]], ...] = (
    (MessageFolder.inbox, ("INBOX",)),
    (MessageFolder.sent, ("Sent Items", "Sent Mail", "[Gmail]/Sent Mail", "Sent")),
    (MessageFolder.draft, ("Drafts", "[Gmail]/Drafts")),
    (MessageFolder.trash, ("Trash", "[Gmail]/Trash", "Deleted Items", "Bin")),
    (MessageFolder.archive, ("Archive", "[Gmail]/All Mail")),
)

SMTP_IMPLICIT_TLS_PORT = 465

ImapFactory = Callable[[str, int], Any]
SmtpFactory = Callable[[str, int], Any]


def default_imap_factory(host: str, port: int) -> IMAPClient:
    return IMAPClient(host, port=port, ssl=True, timeout=30)


def default_smtp_factory(host: str, port: int) -> smtplib.SMTP:
    if port == SMTP_IMPLICIT_TLS_PORT:
        return smtplib.SMTP_SSL(host, port, timeout=30, context=ssl.create_default_context())
    smtp = smtplib.SMTP(host, port, timeout=30)
    smtp.starttls(context=ssl.create_default_context())
    return smtp


@dataclass(frozen=True)
class ImapNativeMessage:
    folder: MessageFolder
    folder_name: str
    uid: int
    flags: tuple[bytes, ...]
    raw: bytes


def _flag_set(flags: tuple[bytes | str, ...]) -> set[str]:
    out: set[str] = set()
    for flag in flags:
        value = flag.decode("ascii", errors="replace") if isinstance(flag, bytes) else str(flag)
        out.add(value.lower())
    return out


class ImapSmtpProvider(MailProvider):
    """Password-based mailbox: IMAP for reading, SMTP for sending."""

    kind = ProviderKind.imap
    connection_mode = ConnectionMode.password

    def __init__(
        self,
        *,
        imap_factory: ImapFactory | None = None,
        smtp_factory: SmtpFactory | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._imap_factory = imap_factory or default_imap_factory
        self._smtp_factory = smtp_factory or default_smtp_factory

    def initial_window(self) -> timedelta:
        return timedelta(days=self._settings.IMAP_WINDOW_DAYS)

    def test_connection(self, connection: PasswordConnection) -> None:
        self._smtp_login(connection.smtp_host, connection.smtp_port, connection.username, connection.password).quit()
        client = self._imap_login(connection.imap_host, connection.imap_port, connection.username, connection.password)
        client.logout()

    def list_messages(self, account: EmailAccount, *, since: datetime) -> MessageBatch:
        host, port = self._imap_endpoint(account)
        password = self._require_credentials().get_password(account)
        client = self._imap_login(host, port, account.username or account.email_address, password)

        messages: list[CanonicalMessage] = []
        failures: list[ParseFailure] = []
        try:
            for folder, candidates in FOLDER_CANDIDATES:
                folder_name = self._select_first(client, candidates)
                if folder_name is None:
                    log_event(
                        logger,
                        "providers.folder.missing",
                        provider=self.kind,
                        account_id=account.id,
                        folder=folder.value,
                    )
                    continue
                for native in self._fetch_folder(client, folder, folder_name, since):
                    try:
                        messages.append(self.parse(native))
                    except MessageParseError as e:
                        failures.append(
                            ParseFailure(native_id=f"{folder_name}:{native.uid}", folder=folder_name, error=str(e))
                        )
        except (IMAPClientError, OSError) as e:
            raise ProviderError(status_code=503, message=f"IMAP listing failed: {type(e).__name__}") from e
        finally:
            try:
                client.logout()
            except (IMAPClientError, OSError):
                pass

        return MessageBatch(messages=messages, failures=failures)

    def send(self, account: EmailAccount, envelope: OutboundEnvelope) -> SentMessage:
        if not account.smtp_host or not account.smtp_port:
            raise ProviderError(status_code=400, message="Account has no SMTP settings")
        password = self._require_credentials().get_password(account)
        mime = build_mime_message(envelope)
        smtp = self._smtp_login(account.smtp_host, account.smtp_port, account.username or account.email_address, password)
        try:
            # send_message strips the Bcc header itself but still delivers to it.
            smtp.send_message(mime)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(status_code=502, message=f"SMTP send failed: {type(e).__name__}") from e
        finally:
            try:
                smtp.quit()
            except (smtplib.SMTPException, OSError):
                pass
        log_event(logger, "providers.sent", provider=self.kind, account_id=account.id)
        message_id = str(mime["Message-ID"])
        # The SMTP relay assigns no id of its own; the Sent copy is matched on Message-ID.
        return SentMessage(provider_message_id=message_id, rfc_message_id=message_id)

    def modify_flags(
        self,
        account: EmailAccount,
        provider_message_id: str,
        *,
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> None:
        folder_name, sep, uid_text = provider_message_id.rpartition(":")
        if not sep or not folder_name or not uid_text.isdigit():
            raise ProviderError(status_code=400, message="Message was not synced from this mailbox")
        uid = int(uid_text)
        host, port = self._imap_endpoint(account)
        password = self._require_credentials().get_password(account)
        client = self._imap_login(host, port, account.username or account.email_address, password)
        try:
            client.select_folder(folder_name)
            for flag, wanted in ((b"\\Seen", is_read), (b"\\Flagged", is_starred)):
                if wanted is True:
                    client.add_flags([uid], [flag])
                elif wanted is False:
                    client.remove_flags([uid], [flag])
        except (IMAPClientError, OSError) as e:
            raise ProviderError(status_code=503, message=f"IMAP flag update failed: {type(e).__name__}") from e
        finally:
            try:
                client.logout()
            except (IMAPClientError, OSError):
                pass
        log_event(logger, "providers.flags_modified", provider=self.kind, account_id=account.id)

    def parse(self, native: Any) -> CanonicalMessage:
        if not isinstance(native, ImapNativeMessage):
            raise MessageParseError("Unexpected IMAP message shape")
        parsed = parse_rfc822(native.raw)
        flags = _flag_set(native.flags)
        return CanonicalMessage(
            provider_message_id=f"{native.folder_name}:{native.uid}",
            rfc_message_id=parsed.rfc_message_id,
            in_reply_to=parsed.in_reply_to,
            references=parsed.references,
            from_address=parsed.from_address,
            from_name=parsed.from_name,
            to_addresses=parsed.to_addresses,
            cc_addresses=parsed.cc_addresses,
            bcc_addresses=parsed.bcc_addresses,
            subject=parsed.subject,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            snippet=make_snippet(parsed.body_text),
            folder=native.folder,
            labels=sorted(f for f in flags if not f.startswith("\\")),
            is_read="\\seen" in flags,
            is_starred="\\flagged" in flags,
            has_attachments=parsed.has_attachments,
            sent_at=parsed.date,
            received_at=parsed.date,
        )

    def _imap_endpoint(self, account: EmailAccount) -> tuple[str, int]:
        if not account.imap_host or not account.imap_port:
            raise ProviderError(status_code=400, message="Account has no IMAP settings")
        return account.imap_host, account.imap_port

    def _imap_login(self, host: str, port: int, username: str, password: str) -> Any:
        try:
            client = self._imap_factory(host, port)
        except (IMAPClientError, OSError) as e:
            raise ProviderError(status_code=503, message=f"IMAP connect failed: {type(e).__name__}") from e
        try:
            client.login(username, password)
        except LoginError as e:
            try:
                client.logout()
            except (IMAPClientError, OSError):
                pass
            raise ProviderAuthError(status_code=401, message="IMAP login rejected") from e
        except (IMAPClientError, OSError) as e:
            raise ProviderError(status_code=503, message=f"IMAP login failed: {type(e).__name__}") from e
        return client

    def _smtp_login(self, host: str, port: int, username: str, password: str) -> Any:
        try:
            smtp = self._smtp_factory(host, port)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(status_code=503, message=f"SMTP connect failed: {type(e).__name__}") from e
        try:
            smtp.login(username, password)
        except smtplib.SMTPAuthenticationError as e:
            raise ProviderAuthError(status_code=401, message="SMTP login rejected") from e
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(status_code=503, message=f"SMTP login failed: {type(e).__name__}") from e
        return smtp

    def _select_first(self, client: Any, candidates: tuple[str, ...]) -> str | None:
        for name in candidates:
            try:
                client.select_folder(name, readonly=True)
            except IMAPClientError:
                continue
            return name
        return None

    def _fetch_folder(
        self, client: Any, folder: MessageFolder, folder_name: str, since: datetime
    ) -> list[ImapNativeMessage]:
        uids = client.search(["SINCE", since.date()])
        newest = sorted((int(u) for u in uids), reverse=True)[: self._settings.IMAP_MAX_MESSAGES_PER_FOLDER]
        if not newest:
            return []

        fetched = client.fetch(newest, ["FLAGS", "RFC822"])
        out: list[ImapNativeMessage] = []
        for uid in newest:
            data = fetched.get(uid) or {}
            out.append(
                ImapNativeMessage(
                    folder=folder,
                    folder_name=folder_name,
                    uid=uid,
                    flags=tuple(data.get(b"FLAGS") or ()),
                    raw=data.get(b"RFC822") or b"",
                )
            )
        return out
