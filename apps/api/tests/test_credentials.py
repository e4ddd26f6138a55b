from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.db.session import get_sessionmaker
from mailsync.models.mail import AccountCredential, EmailAccount
from mailsync.providers.errors import ProviderAuthError
from mailsync.providers.types import CredentialBundle
from mailsync.services.credentials import CredentialStore


@pytest.fixture()
def expired_account(db_session: Session, make_user, make_account, clock) -> EmailAccount:  # type: ignore[no-untyped-def]
    account = db_session.get(EmailAccount, make_account(make_user()))
    CredentialStore(db_session, clock=clock).store_oauth_tokens(
        account,
        CredentialBundle(
            access_token="stale-access",
            refresh_token="refresh-1",
            expires_at=clock.now - timedelta(minutes=1),
        ),
    )
    db_session.commit()
    return account


def test_tokens_are_encrypted_at_rest(db_session: Session, expired_account: EmailAccount) -> None:
    row = db_session.execute(
        select(AccountCredential).where(AccountCredential.account_id == expired_account.id)
    ).scalar_one()
    assert b"stale-access" not in row.encrypted_access_token
    assert b"refresh-1" not in row.encrypted_refresh_token
    bundle = CredentialStore(db_session).load_bundle(expired_account)
    assert bundle.refresh_token == "refresh-1"


def test_fresh_token_is_returned_without_refresh(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account = db_session.get(EmailAccount, make_account(make_user()))
    store = CredentialStore(db_session, clock=clock)
    store.store_oauth_tokens(
        account,
        CredentialBundle(access_token="live", refresh_token="r", expires_at=clock.now + timedelta(hours=1)),
    )
    db_session.commit()

    def refresher(bundle: CredentialBundle) -> CredentialBundle:
        raise AssertionError("should not refresh")

    assert store.get_access_token(account, refresher=refresher) == "live"


def test_token_inside_refresh_buffer_is_refreshed(db_session: Session, make_user, make_account, clock) -> None:  # type: ignore[no-untyped-def]
    account = db_session.get(EmailAccount, make_account(make_user()))
    store = CredentialStore(db_session, clock=clock)
    store.store_oauth_tokens(
        account,
        CredentialBundle(access_token="soon", refresh_token="r", expires_at=clock.now + timedelta(seconds=60)),
    )
    db_session.commit()

    def refresher(bundle: CredentialBundle) -> CredentialBundle:
        assert bundle.refresh_token == "r"
        return CredentialBundle(access_token="new", refresh_token="r", expires_at=clock.now + timedelta(hours=1))

    assert store.get_access_token(account, refresher=refresher) == "new"


def test_concurrent_callers_refresh_once(expired_account: EmailAccount, clock) -> None:  # type: ignore[no-untyped-def]
    calls: list[str] = []
    calls_lock = threading.Lock()

    def refresher(bundle: CredentialBundle) -> CredentialBundle:
        with calls_lock:
            calls.append(bundle.refresh_token or "")
        time.sleep(0.2)
        return CredentialBundle(
            access_token="fresh-access",
            refresh_token=None,
            expires_at=clock.now + timedelta(hours=1),
        )

    results: list[str] = []
    errors: list[BaseException] = []

    def worker() -> None:
        session = get_sessionmaker()()
        try:
            account = session.get(EmailAccount, expired_account.id)
            results.append(CredentialStore(session, clock=clock).get_access_token(account, refresher=refresher))
        except BaseException as e:  # noqa: BLE001
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert calls == ["refresh-1"]
    assert results == ["fresh-access"] * 4


def test_refresh_keeps_previous_refresh_token(db_session: Session, expired_account: EmailAccount, clock) -> None:  # type: ignore[no-untyped-def]
    store = CredentialStore(db_session, clock=clock)
    store.get_access_token(
        expired_account,
        refresher=lambda b: CredentialBundle(
            access_token="a2", refresh_token=b.refresh_token, expires_at=clock.now + timedelta(hours=1)
        ),
    )
    assert store.load_bundle(expired_account).refresh_token == "refresh-1"


def test_refresh_failure_propagates_and_leaves_row_unchanged(db_session: Session, expired_account: EmailAccount, clock) -> None:  # type: ignore[no-untyped-def]
    store = CredentialStore(db_session, clock=clock)

    def refresher(bundle: CredentialBundle) -> CredentialBundle:
        raise ProviderAuthError(status_code=400, message="invalid_grant")

    with pytest.raises(ProviderAuthError):
        store.get_access_token(expired_account, refresher=refresher)
    assert store.load_bundle(expired_account).access_token == "stale-access"


def test_missing_password_is_auth_error(db_session: Session, make_user, make_account) -> None:  # type: ignore[no-untyped-def]
    account = db_session.get(EmailAccount, make_account(make_user()))
    with pytest.raises(ProviderAuthError):
        CredentialStore(db_session).get_password(account)


def test_password_blob_does_not_open_for_another_account(db_session: Session, make_user, make_account) -> None:  # type: ignore[no-untyped-def]
    user_id = make_user()
    first = db_session.get(EmailAccount, make_account(user_id, email_address="a@crm.test"))
    second = db_session.get(EmailAccount, make_account(user_id, email_address="b@crm.test"))
    store = CredentialStore(db_session)
    store.store_password(first, "secret")
    store.store_password(second, "other")
    db_session.commit()

    rows = {
        row.account_id: row
        for row in db_session.execute(select(AccountCredential)).scalars().all()
    }
    rows[second.id].encrypted_password = rows[first.id].encrypted_password
    db_session.commit()

    assert store.get_password(first) == "secret"
    with pytest.raises(ProviderAuthError):
        store.get_password(second)
