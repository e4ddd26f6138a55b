from __future__ import annotations

from enum import StrEnum
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mailsync.core.deps import get_provider_options, get_scheduler, require_user
from mailsync.core.http import get_http_client
from mailsync.db.session import get_session
from mailsync.models.enums import MessageFolder
from mailsync.models.identity import User
from mailsync.models.mail import EmailAccount
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.schemas.messages import (
    EmailMessageOut,
    LinkResultOut,
    MessageFlagsUpdate,
    SendMessageRequest,
    SendMessageResponse,
)
from mailsync.services.linking import (
    MESSAGE_HISTORY_LIMIT,
    EntityLinker,
    LinkResult,
    messages_for_deal,
    messages_for_lead,
    messages_for_person,
)
from mailsync.services.messages import get_owned_message, list_messages, update_message_flags
from mailsync.services.outbound import OutboundDraft, OutboundError, OutboundService
from mailsync.services.sync import ProviderOptions
from mailsync.worker.scheduler import JobScheduler

router = APIRouter(prefix="/messages", tags=["messages"])


class LinkedEntity(StrEnum):
    person = "person"
    lead = "lead"
    deal = "deal"


_HISTORY = {
    LinkedEntity.person: messages_for_person,
    LinkedEntity.lead: messages_for_lead,
    LinkedEntity.deal: messages_for_deal,
}


def _link_out(result: LinkResult) -> LinkResultOut:
    return LinkResultOut(
        message_id=result.message_id,
        addresses=result.addresses,
        person_id=result.person_id,
        lead_id=result.lead_id,
        organization_id=result.organization_id,
        deal_id=result.deal_id,
        person_ids=result.person_ids,
        lead_ids=result.lead_ids,
        organization_ids=result.organization_ids,
        deal_ids=result.deal_ids,
        is_unknown=result.is_unknown,
    )


@router.get("", response_model=list[EmailMessageOut])
def messages_list(
    folder: MessageFolder | None = None,
    account_id: UUID | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> list[EmailMessageOut]:
    return list_messages(
        session=session,
        user_id=user.id,
        folder=folder,
        account_id=account_id,
        limit=limit,
    )


@router.post("/send", response_model=SendMessageResponse)
def messages_send(
    payload: SendMessageRequest,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    scheduler: JobScheduler = Depends(get_scheduler),
    provider_options: ProviderOptions = Depends(get_provider_options),
) -> SendMessageResponse:
    service = OutboundService(
        session,
        http=http_client,
        provider_options=provider_options,
        scheduler=scheduler,
    )
    draft = OutboundDraft(
        to=payload.to,
        cc=payload.cc,
        bcc=payload.bcc,
        subject=payload.subject,
        body_text=payload.body_text,
        body_html=payload.body_html,
        track=payload.track,
        scheduled_at=payload.scheduled_at,
        in_reply_to=payload.in_reply_to,
        references=payload.references,
    )
    try:
        result = service.send_message(user_id=user.id, account_id=payload.account_id, draft=draft)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email account not found") from e
    except OutboundError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    except ProviderAuthError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Account needs to be reconnected") from e
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Provider rejected the message") from e

    return SendMessageResponse(
        message_id=result.message_id,
        status=result.status,
        provider_message_id=result.provider_message_id,
    )


@router.post("/{message_id}/link", response_model=LinkResultOut)
def message_relink(
    message_id: UUID,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> LinkResultOut:
    message = get_owned_message(session=session, user_id=user.id, message_id=message_id)
    account = session.get(EmailAccount, message.account_id)
    exclude = [account.email_address] if account is not None else None
    result = EntityLinker(session).link_message(message, exclude=exclude)
    session.commit()
    return _link_out(result)


@router.get("/linked/{entity}/{entity_id}", response_model=list[EmailMessageOut])
def messages_linked(
    entity: LinkedEntity,
    entity_id: UUID,
    limit: int = Query(default=MESSAGE_HISTORY_LIMIT, ge=1, le=200),
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
) -> list[EmailMessageOut]:
    return _HISTORY[entity](session, entity_id, user_id=user.id, limit=limit)


@router.patch("/{message_id}", response_model=EmailMessageOut)
def message_update_flags(
    message_id: UUID,
    payload: MessageFlagsUpdate,
    user: User = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
    provider_options: ProviderOptions = Depends(get_provider_options),
) -> EmailMessageOut:
    message = get_owned_message(session=session, user_id=user.id, message_id=message_id)
    try:
        return update_message_flags(
            session=session,
            message=message,
            http=http_client,
            is_read=payload.is_read,
            is_starred=payload.is_starred,
            provider_options=provider_options,
        )
    except ProviderAuthError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Account needs to be reconnected") from e
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Provider rejected the change") from e
