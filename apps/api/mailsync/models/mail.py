from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.models.base import Base, JSONType, UTCDateTime, utcnow
from mailsync.models.enums import ConnectionMode, MessageFolder, ProviderKind, TrackingEventType


class EmailAccount(Base):
    __tablename__ = "email_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "email_address", name="uq_email_accounts_user_email"),
        Index(
            "uq_email_accounts_one_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default AND sync_enabled"),
            sqlite_where=text("is_default = 1 AND sync_enabled = 1"),
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[ProviderKind] = mapped_column(
        Enum(ProviderKind, name="provider_kind", native_enum=False, length=32), nullable=False
    )
    connection_mode: Mapped[ConnectionMode] = mapped_column(
        Enum(ConnectionMode, name="connection_mode", native_enum=False, length=32), nullable=False
    )
    # Stored lowercased.
    email_address: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Password (IMAP/SMTP) connection settings.
    imap_host: Mapped[str | None] = mapped_column(Text, nullable=True)
    imap_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    smtp_host: Mapped[str | None] = mapped_column(Text, nullable=True)
    smtp_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AccountCredential(Base):
    __tablename__ = "account_credentials"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    encrypted_access_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    encrypted_refresh_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    encrypted_password: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class EmailThread(Base):
    __tablename__ = "email_threads"
    __table_args__ = (Index("ix_email_threads_account_subject", "account_id", "subject"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    participants: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    last_message_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class EmailMessage(Base):
    __tablename__ = "email_messages"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_email_messages_account_provider_id"),
        Index("ix_email_messages_account_folder", "account_id", "folder"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    thread_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("email_threads.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # NULL only while an outbound message waits in the outbox.
    provider_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    rfc_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    from_address: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    from_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_addresses: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    cc_addresses: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    bcc_addresses: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)

    folder: Mapped[MessageFolder] = mapped_column(
        Enum(MessageFolder, name="message_folder", native_enum=False, length=32), nullable=False
    )
    labels: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tracking_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Fetch time of the provider snapshot the flags came from.
    fetched_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    person_id: Mapped[UUID | None] = mapped_column(ForeignKey("persons.id", ondelete="SET NULL"), nullable=True)
    lead_id: Mapped[UUID | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    organization_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True
    )
    deal_id: Mapped[UUID | None] = mapped_column(ForeignKey("deals.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class EmailTrackingEvent(Base):
    __tablename__ = "email_tracking_events"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    message_id: Mapped[UUID] = mapped_column(
        ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[TrackingEventType] = mapped_column(
        Enum(TrackingEventType, name="tracking_event_type", native_enum=False, length=16), nullable=False
    )
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
