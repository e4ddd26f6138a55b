from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.models.mail import EmailMessage, EmailThread

# Bound on same-subject threads inspected per message; newest activity first.
_CANDIDATE_LIMIT = 50


def message_participants(message: EmailMessage) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for address in [message.from_address, *message.to_addresses, *message.cc_addresses, *message.bcc_addresses]:
        address = (address or "").strip().lower()
        if address and address not in seen:
            seen.add(address)
            out.append(address)
    return out


def _message_time(message: EmailMessage) -> datetime:
    return message.received_at or message.sent_at or datetime.now(UTC)


class ThreadResolver:
    """Subject + participant heuristic.

    Known limitation: unrelated conversations that reuse a generic subject
    ("Re: Hello") and share a participant end up in one thread.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def find_thread(self, message: EmailMessage) -> EmailThread | None:
        sender = (message.from_address or "").strip().lower()
        if not sender:
            return None
        candidates = (
            self._session.execute(
                select(EmailThread)
                .where(
                    EmailThread.account_id == message.account_id,
                    EmailThread.subject == (message.subject or ""),
                )
                .order_by(EmailThread.last_message_at.desc(), EmailThread.id)
                .limit(_CANDIDATE_LIMIT)
            )
            .scalars()
            .all()
        )
        for thread in candidates:
            if sender in (thread.participants or []):
                return thread
        return None

    def assign(self, message: EmailMessage) -> EmailThread:
        occurred_at = _message_time(message)
        thread = self.find_thread(message)
        if thread is None:
            thread = EmailThread(
                account_id=message.account_id,
                subject=message.subject or "",
                participants=message_participants(message),
                last_message_at=occurred_at,
                message_count=0,
            )
            self._session.add(thread)
        else:
            merged = list(thread.participants or [])
            for address in message_participants(message):
                if address not in merged:
                    merged.append(address)
            # Reassign so the JSON column is flagged dirty.
            thread.participants = merged

        thread.message_count = (thread.message_count or 0) + 1
        if thread.last_message_at is None or occurred_at > thread.last_message_at:
            thread.last_message_at = occurred_at
        self._session.flush()
        message.thread_id = thread.id
        return thread
