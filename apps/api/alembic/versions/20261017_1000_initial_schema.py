"""Initial mail sync schema

Revision ID: 20261017_1000
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "20261017_1000"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _enum(name: str, *values: str, length: int = 32) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("is_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )

    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_organizations_email", "organizations", ["email"])

    op.create_table(
        "persons",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("created_at"),
    )

    op.create_table(
        "person_emails",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("person_id", sa.Uuid(), sa.ForeignKey("persons.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
    )
    op.create_index("ix_person_emails_email", "person_emails", ["email"])

    op.create_table(
        "leads",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Uuid(), sa.ForeignKey("persons.id", ondelete="SET NULL"), nullable=True),
        sa.Column("owner_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("secondary_email", sa.String(320), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_leads_email", "leads", ["email"])
    op.create_index("ix_leads_secondary_email", "leads", ["secondary_email"])

    op.create_table(
        "deals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Uuid(), sa.ForeignKey("persons.id", ondelete="SET NULL"), nullable=True),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("leads.id", ondelete="SET NULL"), nullable=True),
        sa.Column("owner_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "email_accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", _enum("provider_kind", "gmail", "outlook", "imap"), nullable=False),
        sa.Column("connection_mode", _enum("connection_mode", "oauth", "password"), nullable=False),
        sa.Column("email_address", sa.String(320), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_reauth", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("imap_host", sa.Text(), nullable=True),
        sa.Column("imap_port", sa.Integer(), nullable=True),
        sa.Column("smtp_host", sa.Text(), nullable=True),
        sa.Column("smtp_port", sa.Integer(), nullable=True),
        sa.Column("username", sa.Text(), nullable=True),
        _ts("last_sync_at", nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("user_id", "email_address", name="uq_email_accounts_user_email"),
    )
    op.create_index(
        "uq_email_accounts_one_default",
        "email_accounts",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default AND sync_enabled"),
        sqlite_where=sa.text("is_default = 1 AND sync_enabled = 1"),
    )

    op.create_table(
        "account_credentials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Uuid(),
            sa.ForeignKey("email_accounts.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("encrypted_access_token", sa.LargeBinary(), nullable=True),
        sa.Column("encrypted_refresh_token", sa.LargeBinary(), nullable=True),
        sa.Column("encrypted_password", sa.LargeBinary(), nullable=True),
        _ts("access_token_expires_at", nullable=True),
        sa.Column("scopes", _JSON, nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "email_threads",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id", sa.Uuid(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("participants", _JSON, nullable=False),
        _ts("last_message_at"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
    )
    op.create_index("ix_email_threads_account_subject", "email_threads", ["account_id", "subject"])

    op.create_table(
        "email_messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id", sa.Uuid(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "thread_id", sa.Uuid(), sa.ForeignKey("email_threads.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("provider_message_id", sa.Text(), nullable=True),
        sa.Column("rfc_message_id", sa.Text(), nullable=True),
        sa.Column("in_reply_to", sa.Text(), nullable=True),
        sa.Column("reference_ids", _JSON, nullable=False),
        sa.Column("from_address", sa.String(320), nullable=False),
        sa.Column("from_name", sa.Text(), nullable=True),
        sa.Column("to_addresses", _JSON, nullable=False),
        sa.Column("cc_addresses", _JSON, nullable=False),
        sa.Column("bcc_addresses", _JSON, nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column(
            "folder",
            _enum("message_folder", "inbox", "sent", "draft", "trash", "archive", "outbox"),
            nullable=False,
        ),
        sa.Column("labels", _JSON, nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_starred", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_attachments", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tracking_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("sent_at", nullable=True),
        _ts("received_at", nullable=True),
        _ts("scheduled_at", nullable=True),
        _ts("fetched_at", nullable=True),
        sa.Column("person_id", sa.Uuid(), sa.ForeignKey("persons.id", ondelete="SET NULL"), nullable=True),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("leads.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("deal_id", sa.Uuid(), sa.ForeignKey("deals.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("account_id", "provider_message_id", name="uq_email_messages_account_provider_id"),
    )
    op.create_index("ix_email_messages_account_folder", "email_messages", ["account_id", "folder"])
    op.create_index("ix_email_messages_thread_id", "email_messages", ["thread_id"])

    op.create_table(
        "email_tracking_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "message_id", sa.Uuid(), sa.ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("event_type", _enum("tracking_event_type", "open", "click", length=16), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_email_tracking_events_message_id", "email_tracking_events", ["message_id"])

    op.create_table(
        "bg_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id", sa.Uuid(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column(
            "type",
            _enum("job_type", "account_sync", "all_accounts_sync", "periodic_sync", "outbound_send"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("job_status", "queued", "running", "succeeded", "failed", length=16),
            nullable=False,
        ),
        _ts("run_at"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        _ts("locked_at", nullable=True),
        sa.Column("locked_by", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("finished_at", nullable=True),
        sa.Column("dedupe_key", sa.Text(), nullable=True),
        sa.Column("payload", _JSON, nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_bg_jobs_claim", "bg_jobs", ["status", "run_at"])
    op.create_index(
        "uq_bg_jobs_dedupe_active",
        "bg_jobs",
        ["type", "dedupe_key"],
        unique=True,
        postgresql_where=sa.text("dedupe_key IS NOT NULL AND status IN ('queued', 'running')"),
        sqlite_where=sa.text("dedupe_key IS NOT NULL AND status IN ('queued', 'running')"),
    )


def downgrade() -> None:
    # No downgrade support (early-stage schema; breaking changes allowed).
    pass
