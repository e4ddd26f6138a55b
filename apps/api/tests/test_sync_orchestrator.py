from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fakes import ScriptedProvider, canonical
from mailsync.models.crm import Person, PersonEmail
from mailsync.models.enums import MessageFolder
from mailsync.models.mail import EmailAccount, EmailMessage, EmailThread
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.providers.types import MessageBatch, ParseFailure
from mailsync.services.sync import AccountNotFoundError, SyncOrchestrator


@pytest.fixture()
def script() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture()
def account_id(make_user, make_account):  # type: ignore[no-untyped-def]
    return make_account(make_user(), is_default=True)


def _orchestrator(db_session: Session, script: ScriptedProvider, clock) -> SyncOrchestrator:  # type: ignore[no-untyped-def]
    return SyncOrchestrator(db_session, http=httpx.Client(), clock=clock, provider_factory=script.factory)


def _messages(db_session: Session, account_id) -> list[EmailMessage]:  # type: ignore[no-untyped-def]
    return list(
        db_session.execute(select(EmailMessage).where(EmailMessage.account_id == account_id)).scalars().all()
    )


def test_resync_of_same_messages_is_idempotent(db_session: Session, script, account_id, clock) -> None:
    script.batches = [[canonical("m1"), canonical("m2")], [canonical("m1"), canonical("m2")]]
    orchestrator = _orchestrator(db_session, script, clock)

    first = orchestrator.sync_account(account_id)
    clock.advance(minutes=5)
    second = orchestrator.sync_account(account_id)

    assert (first.created, first.updated, first.unchanged) == (2, 0, 0)
    assert (second.created, second.updated, second.unchanged) == (0, 0, 2)
    assert len(_messages(db_session, account_id)) == 2


def test_flag_changes_update_existing_row(db_session: Session, script, account_id, clock) -> None:
    script.batches = [[canonical("m1")], [canonical("m1", is_read=True, is_starred=True, labels=["INBOX", "STARRED"])]]
    orchestrator = _orchestrator(db_session, script, clock)

    orchestrator.sync_account(account_id)
    clock.advance(minutes=1)
    result = orchestrator.sync_account(account_id)

    (message,) = _messages(db_session, account_id)
    assert result.updated == 1
    assert message.is_read is True
    assert message.is_starred is True
    assert message.labels == ["INBOX", "STARRED"]


def test_stale_snapshot_does_not_overwrite_newer_flags(db_session: Session, script, account_id, clock) -> None:
    script.batches = [[canonical("m1", is_read=True)]]
    orchestrator = _orchestrator(db_session, script, clock)
    orchestrator.sync_account(account_id)

    (message,) = _messages(db_session, account_id)
    stored_fetch = message.fetched_at
    message.fetched_at = stored_fetch + timedelta(hours=1)
    db_session.commit()

    script.batches = [[canonical("m1", is_read=False)]]
    result = orchestrator.sync_account(account_id)

    db_session.refresh(message)
    assert result.unchanged == 1
    assert message.is_read is True


def test_unparseable_messages_are_skipped(db_session: Session, script, account_id, clock) -> None:
    script.batches = [
        MessageBatch(
            messages=[canonical("ok")],
            failures=[ParseFailure(native_id="broken", folder="INBOX", error="no sender")],
        )
    ]
    result = _orchestrator(db_session, script, clock).sync_account(account_id)

    assert result.created == 1
    assert result.skipped == 1
    assert [m.provider_message_id for m in _messages(db_session, account_id)] == ["ok"]


def test_auth_failure_aborts_and_flags_account(db_session: Session, script, account_id, clock) -> None:
    script.error = ProviderAuthError(status_code=401, message="revoked")

    with pytest.raises(ProviderAuthError):
        _orchestrator(db_session, script, clock).sync_account(account_id)

    account = db_session.get(EmailAccount, account_id)
    db_session.refresh(account)
    assert account.requires_reauth is True
    assert "revoked" in account.last_sync_error
    assert account.last_sync_at is None
    assert _messages(db_session, account_id) == []


def test_disabled_account_is_skipped(db_session: Session, script, make_user, make_account, clock) -> None:
    account_id = make_account(make_user(), sync_enabled=False)
    result = _orchestrator(db_session, script, clock).sync_account(account_id)
    assert result.skipped_disabled is True
    assert script.since == []


def test_unknown_account_raises(db_session: Session, script, clock) -> None:
    from uuid import uuid4

    with pytest.raises(AccountNotFoundError):
        _orchestrator(db_session, script, clock).sync_account(uuid4())


def test_window_uses_initial_window_then_last_sync_with_overlap(db_session: Session, script, account_id, clock) -> None:
    orchestrator = _orchestrator(db_session, script, clock)
    orchestrator.sync_account(account_id)
    first_sync_at = clock.now
    clock.advance(hours=2)
    orchestrator.sync_account(account_id)

    assert script.since[0] == first_sync_at - timedelta(days=7)
    assert script.since[1] == first_sync_at - timedelta(days=1)


def test_sync_all_isolates_failures(db_session: Session, make_user, make_account, clock) -> None:
    user_id = make_user()
    good_id = make_account(user_id, email_address="good@crm.test")
    bad_id = make_account(user_id, email_address="bad@crm.test")

    class PerAccount(ScriptedProvider):
        def factory(self, account, **deps):  # type: ignore[no-untyped-def]
            adapter = super().factory(account, **deps)
            if account.id == bad_id:
                failing = ScriptedProvider()
                failing.error = ProviderError(status_code=503, message="down")
                return failing.factory(account)
            return adapter

    script = PerAccount()
    script.batches = [[canonical("g1")]]
    orchestrator = SyncOrchestrator(db_session, http=httpx.Client(), clock=clock, provider_factory=script.factory)

    results = orchestrator.sync_all_accounts(user_id=user_id)

    assert results[good_id].created == 1
    assert isinstance(results[bad_id], ProviderError)
    assert db_session.get(EmailAccount, good_id).last_sync_error is None


def test_replies_join_thread_and_link_to_person(db_session: Session, script, account_id, clock) -> None:
    person = Person(name="Dana")
    db_session.add(person)
    db_session.flush()
    db_session.add(PersonEmail(person_id=person.id, email="dana@client.test"))
    db_session.commit()

    script.batches = [
        [
            canonical("m1"),
            canonical(
                "m2",
                from_address="owner@crm.test",
                to_addresses=["dana@client.test"],
                folder=MessageFolder.sent,
                received_at=datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
            ),
        ]
    ]
    _orchestrator(db_session, script, clock).sync_account(account_id)

    messages = _messages(db_session, account_id)
    assert len({m.thread_id for m in messages}) == 1
    assert all(m.person_id == person.id for m in messages)
    thread = db_session.get(EmailThread, messages[0].thread_id)
    assert thread.message_count == 2
    assert thread.last_message_at == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
    assert db_session.execute(select(func.count()).select_from(EmailThread)).scalar_one() == 1


def test_smtp_sent_row_is_adopted_by_sent_folder_copy(db_session: Session, script, account_id, clock) -> None:
    sent = EmailMessage(
        account_id=account_id,
        provider_message_id="<out-1@crm.test>",
        rfc_message_id="<out-1@crm.test>",
        from_address="owner@crm.test",
        to_addresses=["dana@client.test"],
        cc_addresses=[],
        bcc_addresses=[],
        subject="Offer",
        folder=MessageFolder.sent,
        labels=[],
        is_read=True,
        sent_at=clock.now,
    )
    db_session.add(sent)
    db_session.commit()

    script.batches = [
        [
            canonical(
                "Sent:11",
                rfc_message_id="<out-1@crm.test>",
                from_address="owner@crm.test",
                folder=MessageFolder.sent,
                is_read=True,
            )
        ]
    ]
    result = _orchestrator(db_session, script, clock).sync_account(account_id)

    (message,) = _messages(db_session, account_id)
    assert result.created == 0
    assert message.id == sent.id
    assert message.provider_message_id == "Sent:11"
