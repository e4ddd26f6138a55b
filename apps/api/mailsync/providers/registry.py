from __future__ import annotations

from typing import Any

from mailsync.models.enums import ProviderKind
from mailsync.models.mail import EmailAccount
from mailsync.providers.base import MailProvider
from mailsync.providers.gmail import GmailProvider
from mailsync.providers.imap import ImapSmtpProvider
from mailsync.providers.outlook import OutlookProvider

_PROVIDERS: dict[ProviderKind, type[MailProvider]] = {
    ProviderKind.gmail: GmailProvider,
    ProviderKind.outlook: OutlookProvider,
    ProviderKind.imap: ImapSmtpProvider,
}


def provider_for_kind(kind: ProviderKind, **deps: Any) -> MailProvider:
    try:
        cls = _PROVIDERS[ProviderKind(kind)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unsupported provider: {kind}") from e
    return cls(**deps)


def get_provider(account: EmailAccount, **deps: Any) -> MailProvider:
    """Select the adapter for an account once, at load time."""
    return provider_for_kind(account.provider, **deps)
