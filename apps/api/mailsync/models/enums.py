from __future__ import annotations

import enum


class ProviderKind(enum.StrEnum):
    gmail = "gmail"
    outlook = "outlook"
    imap = "imap"


class ConnectionMode(enum.StrEnum):
    oauth = "oauth"
    password = "password"


class MessageFolder(enum.StrEnum):
    inbox = "inbox"
    sent = "sent"
    draft = "draft"
    trash = "trash"
    archive = "archive"
    outbox = "outbox"


class TrackingEventType(enum.StrEnum):
    open = "open"
    click = "click"


class JobStatus(enum.StrEnum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class JobType(enum.StrEnum):
    account_sync = "account_sync"
    all_accounts_sync = "all_accounts_sync"
    periodic_sync = "periodic_sync"
    outbound_send = "outbound_send"
