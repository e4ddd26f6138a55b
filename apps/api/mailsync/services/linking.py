from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from mailsync.core.logging import log_event
from mailsync.models.crm import Deal, Lead, Organization, Person, PersonEmail
from mailsync.models.mail import EmailAccount, EmailMessage

logger = logging.getLogger("mailsync.linking")

MESSAGE_HISTORY_LIMIT = 50


class Notifier(Protocol):
    def notify(self, *, user_id: UUID, message: str, category: str, related_id: UUID) -> None: ...


class LogNotifier:
    def notify(self, *, user_id: UUID, message: str, category: str, related_id: UUID) -> None:
        log_event(
            logger,
            "linking.notification",
            user_id=user_id,
            message=message,
            category=category,
            related_id=related_id,
        )


@dataclass(frozen=True)
class LinkResult:
    message_id: UUID
    addresses: list[str]
    person_ids: list[UUID] = field(default_factory=list)
    lead_ids: list[UUID] = field(default_factory=list)
    organization_ids: list[UUID] = field(default_factory=list)
    deal_ids: list[UUID] = field(default_factory=list)

    @property
    def person_id(self) -> UUID | None:
        return self.person_ids[0] if self.person_ids else None

    @property
    def lead_id(self) -> UUID | None:
        return self.lead_ids[0] if self.lead_ids else None

    @property
    def organization_id(self) -> UUID | None:
        return self.organization_ids[0] if self.organization_ids else None

    @property
    def deal_id(self) -> UUID | None:
        return self.deal_ids[0] if self.deal_ids else None

    @property
    def is_unknown(self) -> bool:
        return not (self.person_ids or self.lead_ids or self.organization_ids)


def extract_addresses(message: EmailMessage, *, exclude: Iterable[str] = ()) -> list[str]:
    excluded = {e.strip().lower() for e in exclude if e}
    out: list[str] = []
    for address in [message.from_address, *message.to_addresses, *message.cc_addresses, *message.bcc_addresses]:
        address = (address or "").strip().lower()
        if address and address not in excluded and address not in out:
            out.append(address)
    return out


class EntityLinker:
    """Resolves a message's participants to CRM records.

    Categories are queried in a fixed order: persons, leads, organizations,
    then deals owned by the matched persons/leads. Within a category the
    oldest record (created_at, then id) wins.
    """

    def __init__(self, session: Session, *, notifier: Notifier | None = None) -> None:
        self._session = session
        self._notifier = notifier or LogNotifier()

    def auto_link(self, message_id: UUID, *, exclude: Iterable[str] | None = None) -> LinkResult:
        message = self._session.get(EmailMessage, message_id)
        if message is None:
            raise LookupError(f"Email message {message_id} not found")
        return self.link_message(message, exclude=exclude)

    def link_message(self, message: EmailMessage, *, exclude: Iterable[str] | None = None) -> LinkResult:
        account = self._session.get(EmailAccount, message.account_id)
        if exclude is None:
            exclude = [account.email_address] if account is not None else []
        addresses = extract_addresses(message, exclude=exclude)
        if not addresses:
            result = LinkResult(message_id=message.id, addresses=[])
            self._log_unknown(message, result)
            return result

        person_ids = self._match_persons(addresses)
        lead_ids = self._match_leads(addresses)
        organization_ids = self._match_organizations(addresses)
        deal_ids = self._match_deals(person_ids, lead_ids)
        result = LinkResult(
            message_id=message.id,
            addresses=addresses,
            person_ids=person_ids,
            lead_ids=lead_ids,
            organization_ids=organization_ids,
            deal_ids=deal_ids,
        )

        previous_lead_id = message.lead_id
        previous_deal_id = message.deal_id
        message.person_id = result.person_id
        message.lead_id = result.lead_id
        message.organization_id = result.organization_id
        message.deal_id = result.deal_id
        self._session.flush()

        if result.is_unknown:
            self._log_unknown(message, result)
        elif account is not None:
            if result.deal_id is not None and result.deal_id != previous_deal_id:
                self._notifier.notify(
                    user_id=account.user_id,
                    message=f"New email linked to deal: {message.subject or '(no subject)'}",
                    category="email",
                    related_id=result.deal_id,
                )
            if result.lead_id is not None and result.lead_id != previous_lead_id:
                self._notifier.notify(
                    user_id=account.user_id,
                    message=f"New email linked to lead: {message.subject or '(no subject)'}",
                    category="email",
                    related_id=result.lead_id,
                )
        return result

    def _match_persons(self, addresses: list[str]) -> list[UUID]:
        matching = select(PersonEmail.person_id).where(func.lower(PersonEmail.email).in_(addresses))
        stmt = select(Person.id).where(Person.id.in_(matching)).order_by(Person.created_at, Person.id)
        return list(self._session.execute(stmt).scalars().all())

    def _match_leads(self, addresses: list[str]) -> list[UUID]:
        stmt = (
            select(Lead.id)
            .where(
                or_(
                    func.lower(Lead.email).in_(addresses),
                    func.lower(Lead.secondary_email).in_(addresses),
                )
            )
            .order_by(Lead.created_at, Lead.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def _match_organizations(self, addresses: list[str]) -> list[UUID]:
        stmt = (
            select(Organization.id)
            .where(func.lower(Organization.email).in_(addresses))
            .order_by(Organization.created_at, Organization.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def _match_deals(self, person_ids: list[UUID], lead_ids: list[UUID]) -> list[UUID]:
        clauses = []
        if person_ids:
            clauses.append(Deal.person_id.in_(person_ids))
        if lead_ids:
            clauses.append(Deal.lead_id.in_(lead_ids))
        if not clauses:
            return []
        stmt = select(Deal.id).where(or_(*clauses)).order_by(Deal.created_at, Deal.id)
        return list(self._session.execute(stmt).scalars().all())

    def _log_unknown(self, message: EmailMessage, result: LinkResult) -> None:
        log_event(
            logger,
            "linking.unknown_sender",
            account_id=message.account_id,
            message_id=message.id,
            addresses=result.addresses,
        )


def _recent_messages(session: Session, *criteria, user_id: UUID | None, limit: int) -> list[EmailMessage]:  # type: ignore[no-untyped-def]
    stmt = (
        select(EmailMessage)
        .where(*criteria)
        .order_by(func.coalesce(EmailMessage.received_at, EmailMessage.sent_at, EmailMessage.created_at).desc())
        .limit(limit)
    )
    if user_id is not None:
        # History is per mailbox owner; CRM records are shared, mailboxes are not.
        stmt = stmt.join(EmailAccount, EmailAccount.id == EmailMessage.account_id).where(EmailAccount.user_id == user_id)
    return list(session.execute(stmt).scalars().all())


def messages_for_person(
    session: Session, person_id: UUID, *, user_id: UUID | None = None, limit: int = MESSAGE_HISTORY_LIMIT
) -> list[EmailMessage]:
    return _recent_messages(session, EmailMessage.person_id == person_id, user_id=user_id, limit=limit)


def messages_for_lead(
    session: Session, lead_id: UUID, *, user_id: UUID | None = None, limit: int = MESSAGE_HISTORY_LIMIT
) -> list[EmailMessage]:
    return _recent_messages(session, EmailMessage.lead_id == lead_id, user_id=user_id, limit=limit)


def messages_for_deal(
    session: Session, deal_id: UUID, *, user_id: UUID | None = None, limit: int = MESSAGE_HISTORY_LIMIT
) -> list[EmailMessage]:
    return _recent_messages(session, EmailMessage.deal_id == deal_id, user_id=user_id, limit=limit)
