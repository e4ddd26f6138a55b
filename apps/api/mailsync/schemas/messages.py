from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator


class EmailMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    thread_id: UUID | None
    provider_message_id: str | None
    rfc_message_id: str | None
    from_address: str
    from_name: str | None
    to_addresses: list[str]
    cc_addresses: list[str]
    subject: str
    snippet: str | None
    folder: str
    labels: list[str]
    is_read: bool
    is_starred: bool
    has_attachments: bool
    sent_at: datetime | None
    received_at: datetime | None
    scheduled_at: datetime | None
    person_id: UUID | None
    lead_id: UUID | None
    organization_id: UUID | None
    deal_id: UUID | None


class SendMessageRequest(BaseModel):
    account_id: UUID
    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(default="", max_length=998)
    body_text: str | None = None
    body_html: str | None = None
    track: bool = True
    scheduled_at: AwareDatetime | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)

    @field_validator("subject", "in_reply_to")
    @classmethod
    def _single_line(cls, v: str | None) -> str | None:
        if v is not None and ("\r" in v or "\n" in v):
            raise ValueError("must not contain line breaks")
        return v

    @field_validator("to", "cc", "bcc", "references")
    @classmethod
    def _single_line_items(cls, v: list[str]) -> list[str]:
        if any("\r" in item or "\n" in item for item in v):
            raise ValueError("entries must not contain line breaks")
        return v


class MessageFlagsUpdate(BaseModel):
    is_read: bool | None = None
    is_starred: bool | None = None


class SendMessageResponse(BaseModel):
    message_id: UUID
    status: str
    provider_message_id: str | None


class LinkResultOut(BaseModel):
    message_id: UUID
    addresses: list[str]
    person_id: UUID | None
    lead_id: UUID | None
    organization_id: UUID | None
    deal_id: UUID | None
    person_ids: list[UUID]
    lead_ids: list[UUID]
    organization_ids: list[UUID]
    deal_ids: list[UUID]
    is_unknown: bool
