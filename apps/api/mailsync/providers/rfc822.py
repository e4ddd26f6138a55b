from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage, Message
from email.parser import BytesParser
from email.utils import formataddr, getaddresses, make_msgid, parsedate_to_datetime

from mailsync.providers.errors import MessageParseError
from mailsync.providers.sanitize import sanitize_html
from mailsync.providers.types import OutboundEnvelope

SNIPPET_LENGTH = 200


@dataclass(frozen=True)
class ParsedRfc822:
    rfc_message_id: str | None
    in_reply_to: str | None
    references: list[str]
    date: datetime | None
    subject: str
    from_address: str
    from_name: str | None
    to_addresses: list[str]
    cc_addresses: list[str]
    bcc_addresses: list[str]
    body_text: str | None
    body_html: str | None
    has_attachments: bool


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def lower_addresses(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for _name, addr in getaddresses(values):
        addr = (addr or "").strip().lower()
        if addr and addr not in seen:
            seen.add(addr)
            out.append(addr)
    return out


def split_address(value: str | None) -> tuple[str, str | None]:
    if not value:
        return "", None
    parsed = getaddresses([value])
    if not parsed:
        return "", None
    name, addr = parsed[0]
    return (addr or "").strip().lower(), (name or "").strip() or None


def split_references(values: list[str]) -> list[str]:
    refs: list[str] = []
    for value in values:
        refs.extend(r.strip() for r in str(value).split() if r.strip())
    return refs


def make_snippet(text: str | None) -> str | None:
    if not text:
        return None
    collapsed = " ".join(text.split())
    return collapsed[:SNIPPET_LENGTH] or None


def _is_attachment(part: Message) -> bool:
    disp = (part.get_content_disposition() or "").lower()
    return bool(disp in {"attachment", "inline"} and part.get_filename())


def _walk_bodies(msg: Message) -> tuple[str | None, str | None, bool]:
    text_parts: list[str] = []
    html_parts: list[str] = []
    has_attachments = False

    parts = list(msg.walk()) if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        if _is_attachment(part):
            has_attachments = True
            continue

        content_type = (part.get_content_type() or "").lower()
        try:
            payload_bytes = part.get_payload(decode=True) or b""
            charset = part.get_content_charset() or "utf-8"
            payload_text = payload_bytes.decode(charset, errors="replace")
        except (LookupError, ValueError):
            continue

        if content_type == "text/plain" and payload_text.strip():
            text_parts.append(payload_text.strip())
        elif content_type == "text/html" and payload_text.strip():
            html_parts.append(payload_text.strip())

    body_text = "\n\n".join(text_parts) or None
    body_html = sanitize_html("\n\n".join(html_parts) or None)
    return body_text, body_html, has_attachments


def _header(msg: Message, name: str) -> str | None:
    # policy.default parses header values lazily and its parser can fail on
    # garbage (e.g. "Message-ID: <[" raises IndexError); treat those as absent.
    try:
        value = msg.get(name)
        return str(value) if value is not None else None
    except Exception:  # noqa: BLE001
        return None


def _header_values(msg: Message, name: str) -> list[str]:
    try:
        return [str(v) for v in msg.get_all(name, [])]
    except Exception:  # noqa: BLE001
        return []


def parse_rfc822(raw: bytes) -> ParsedRfc822:
    if not raw:
        raise MessageParseError("Empty RFC 822 payload")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
    except (TypeError, ValueError) as e:
        raise MessageParseError(f"Unparseable RFC 822 payload: {e}") from e

    from_address, from_name = split_address(_header(msg, "From"))
    if not from_address:
        raise MessageParseError("Message has no readable sender address")

    try:
        body_text, body_html, has_attachments = _walk_bodies(msg)
    except Exception as e:  # noqa: BLE001
        raise MessageParseError(f"Undecodable message body: {type(e).__name__}") from e

    return ParsedRfc822(
        rfc_message_id=(_header(msg, "Message-ID") or "").strip() or None,
        in_reply_to=(_header(msg, "In-Reply-To") or "").strip() or None,
        references=split_references(_header_values(msg, "References")),
        date=parse_date(_header(msg, "Date")),
        subject=_header(msg, "Subject") or "",
        from_address=from_address,
        from_name=from_name,
        to_addresses=lower_addresses(_header_values(msg, "To")),
        cc_addresses=lower_addresses(_header_values(msg, "Cc")),
        bcc_addresses=lower_addresses(_header_values(msg, "Bcc")),
        body_text=body_text,
        body_html=body_html,
        has_attachments=has_attachments,
    )


def build_mime_message(envelope: OutboundEnvelope, *, include_bcc: bool = True) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((envelope.from_name or "", envelope.from_address))
    msg["To"] = ", ".join(envelope.to)
    if envelope.cc:
        msg["Cc"] = ", ".join(envelope.cc)
    if envelope.bcc and include_bcc:
        msg["Bcc"] = ", ".join(envelope.bcc)
    msg["Subject"] = envelope.subject
    domain = envelope.from_address.rsplit("@", 1)[-1] if "@" in envelope.from_address else None
    msg["Message-ID"] = make_msgid(domain=domain)
    if envelope.in_reply_to:
        msg["In-Reply-To"] = envelope.in_reply_to
    if envelope.references:
        msg["References"] = " ".join(envelope.references)

    msg.set_content(envelope.body_text or "")
    if envelope.body_html:
        msg.add_alternative(envelope.body_html, subtype="html")
    return msg
