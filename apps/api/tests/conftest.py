from __future__ import annotations

import base64
import os
import tempfile
from collections.abc import Callable, Generator
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from uuid import UUID

import pytest
from alembic.config import Config
from sqlalchemy.orm import Session

from alembic import command


@pytest.fixture(scope="session", autouse=True)
def _test_database() -> Generator[None, None, None]:
    # Always migrate a throwaway SQLite file; never touch the configured database.
    tmpdir = tempfile.mkdtemp(prefix="mailsync_test_")
    db_path = Path(tmpdir) / "test.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    os.environ["APP_ENV"] = "test"
    os.environ["ENCRYPTION_KEY_BASE64"] = base64.b64encode(b"k" * 32).decode("ascii")
    os.environ["STATE_SECRET"] = "test-state-secret"
    os.environ["API_BASE_URL"] = "http://api.test"
    os.environ["FRONTEND_URL"] = "http://app.test"
    os.environ["GOOGLE_CLIENT_ID"] = "google-client"
    os.environ["GOOGLE_CLIENT_SECRET"] = "google-secret"
    os.environ["MICROSOFT_CLIENT_ID"] = "ms-client"
    os.environ["MICROSOFT_CLIENT_SECRET"] = "ms-secret"

    # Clear cached settings/engines so imports inside the test session use the test DB.
    from mailsync.core.config import get_settings
    from mailsync.db.session import get_engine, get_sessionmaker

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    cfg = Config(str(alembic_ini))
    command.upgrade(cfg, "head")

    yield

    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()
    with suppress(OSError):
        db_path.unlink()


@pytest.fixture(autouse=True)
def _clean_tables() -> Generator[None, None, None]:
    yield
    from mailsync.db.session import get_engine
    from mailsync.models import Base

    with get_engine().begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    from mailsync.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., UUID]:
    from mailsync.models.identity import User

    def _make(email: str = "owner@crm.test", *, display_name: str | None = None) -> UUID:
        user = User(email=email, display_name=display_name)
        db_session.add(user)
        db_session.commit()
        return user.id

    return _make


@pytest.fixture()
def make_account(db_session: Session) -> Callable[..., UUID]:
    from mailsync.models.enums import ConnectionMode, ProviderKind
    from mailsync.models.mail import EmailAccount

    def _make(
        user_id: UUID,
        *,
        email_address: str = "owner@crm.test",
        provider: ProviderKind = ProviderKind.gmail,
        is_default: bool = False,
        sync_enabled: bool = True,
        **fields: object,
    ) -> UUID:
        mode = ConnectionMode.password if provider == ProviderKind.imap else ConnectionMode.oauth
        account = EmailAccount(
            user_id=user_id,
            email_address=email_address,
            provider=provider,
            connection_mode=mode,
            is_default=is_default,
            sync_enabled=sync_enabled,
            **fields,
        )
        db_session.add(account)
        db_session.commit()
        return account.id

    return _make
