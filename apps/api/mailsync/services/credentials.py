from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.core.config import Settings, get_settings
from mailsync.core.crypto import SecretDecryptionError, open_secret, seal_secret
from mailsync.core.logging import log_event
from mailsync.core.metrics import observe_token_refresh
from mailsync.models.mail import AccountCredential, EmailAccount
from mailsync.providers.errors import ProviderAuthError
from mailsync.providers.types import CredentialBundle

logger = logging.getLogger("mailsync.credentials")

Refresher = Callable[[CredentialBundle], CredentialBundle]

_refresh_locks: dict[UUID, threading.Lock] = {}
_refresh_locks_guard = threading.Lock()


def _account_lock(account_id: UUID) -> threading.Lock:
    with _refresh_locks_guard:
        lock = _refresh_locks.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _refresh_locks[account_id] = lock
        return lock


class CredentialStore:
    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def store_oauth_tokens(self, account: EmailAccount, bundle: CredentialBundle) -> AccountCredential:
        row = self._get_or_create(account.id)
        if bundle.access_token:
            row.encrypted_access_token = seal_secret(bundle.access_token, account_id=account.id, kind="access")
        if bundle.refresh_token:
            row.encrypted_refresh_token = seal_secret(bundle.refresh_token, account_id=account.id, kind="refresh")
        row.access_token_expires_at = bundle.expires_at
        if bundle.scopes:
            row.scopes = list(bundle.scopes)
        self._session.flush()
        return row

    def store_password(self, account: EmailAccount, password: str) -> AccountCredential:
        row = self._get_or_create(account.id)
        row.encrypted_password = seal_secret(password, account_id=account.id, kind="password")
        self._session.flush()
        return row

    def get_password(self, account: EmailAccount) -> str:
        row = self._load(account.id)
        if row is None or row.encrypted_password is None:
            raise ProviderAuthError(status_code=401, message="No password stored; reconnect the account")
        try:
            return open_secret(row.encrypted_password, account_id=account.id, kind="password")
        except SecretDecryptionError as e:
            raise ProviderAuthError(status_code=401, message="Stored password cannot be decrypted") from e

    def load_bundle(self, account: EmailAccount) -> CredentialBundle:
        row = self._load(account.id)
        if row is None:
            raise ProviderAuthError(status_code=401, message="No credentials stored; reconnect the account")
        return self._bundle_from_row(account.id, row)

    def get_access_token(self, account: EmailAccount, *, refresher: Refresher) -> str:
        row = self._load(account.id)
        if row is not None and self._is_fresh(row):
            return self._bundle_from_row(account.id, row).access_token or ""

        # Single-flight per account: threads in this process queue on the lock,
        # other processes queue on the row lock; both re-check before refreshing.
        with _account_lock(account.id):
            row = (
                self._session.execute(
                    select(AccountCredential)
                    .where(AccountCredential.account_id == account.id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .first()
            )
            if row is None:
                raise ProviderAuthError(status_code=401, message="No credentials stored; reconnect the account")
            if self._is_fresh(row):
                self._session.commit()
                return self._bundle_from_row(account.id, row).access_token or ""

            current = self._bundle_from_row(account.id, row)
            try:
                refreshed = refresher(current)
            except Exception as e:
                # Release the row lock before surfacing the failure.
                self._session.rollback()
                outcome = "auth_error" if isinstance(e, ProviderAuthError) else "error"
                observe_token_refresh(provider=str(account.provider), outcome=outcome)
                log_event(
                    logger,
                    "credentials.refresh_failed",
                    level=logging.WARNING,
                    account_id=account.id,
                    provider=account.provider,
                    error=str(e),
                )
                raise

            self.store_oauth_tokens(account, refreshed)
            # Commit now so concurrent callers see the new token instead of refreshing again.
            self._session.commit()
            observe_token_refresh(provider=str(account.provider), outcome="ok")
            log_event(
                logger,
                "credentials.refreshed",
                account_id=account.id,
                provider=account.provider,
                expires_at=refreshed.expires_at,
            )
            return refreshed.access_token or ""

    def _is_fresh(self, row: AccountCredential) -> bool:
        if row.encrypted_access_token is None:
            return False
        if row.access_token_expires_at is None:
            return True
        buffer = timedelta(seconds=self._settings.TOKEN_REFRESH_BUFFER_SECONDS)
        return row.access_token_expires_at - buffer > self._clock()

    def _bundle_from_row(self, account_id: UUID, row: AccountCredential) -> CredentialBundle:
        try:
            access = (
                open_secret(row.encrypted_access_token, account_id=account_id, kind="access")
                if row.encrypted_access_token is not None
                else None
            )
            refresh = (
                open_secret(row.encrypted_refresh_token, account_id=account_id, kind="refresh")
                if row.encrypted_refresh_token is not None
                else None
            )
        except SecretDecryptionError as e:
            raise ProviderAuthError(status_code=401, message="Stored tokens cannot be decrypted") from e
        return CredentialBundle(
            access_token=access,
            refresh_token=refresh,
            expires_at=row.access_token_expires_at,
            scopes=list(row.scopes or []),
        )

    def _load(self, account_id: UUID) -> AccountCredential | None:
        return (
            self._session.execute(select(AccountCredential).where(AccountCredential.account_id == account_id))
            .scalars()
            .first()
        )

    def _get_or_create(self, account_id: UUID) -> AccountCredential:
        row = self._load(account_id)
        if row is None:
            row = AccountCredential(account_id=account_id, scopes=[])
            self._session.add(row)
        return row
