from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class EmailAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    connection_mode: str
    email_address: str
    display_name: str | None
    is_default: bool
    sync_enabled: bool
    requires_reauth: bool
    imap_host: str | None
    smtp_host: str | None
    last_sync_at: datetime | None
    last_sync_error: str | None
    created_at: datetime
    updated_at: datetime


class OAuthStartResponse(BaseModel):
    authorization_url: str


class PasswordAccountRequest(BaseModel):
    email_address: str = Field(min_length=3, max_length=320)
    display_name: str | None = Field(default=None, max_length=255)
    username: str | None = Field(default=None, max_length=320)
    password: SecretStr
    imap_host: str = Field(min_length=1, max_length=255)
    imap_port: int = Field(default=993, ge=1, le=65535)
    smtp_host: str = Field(min_length=1, max_length=255)
    smtp_port: int = Field(default=465, ge=1, le=65535)


class EmailAccountUpdateRequest(BaseModel):
    sync_enabled: bool | None = None
    display_name: str | None = Field(default=None, max_length=255)


class SyncEnqueueResponse(BaseModel):
    job_type: str
    job_id: UUID | None
