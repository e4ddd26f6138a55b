from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from mailsync.core.config import Settings, get_settings
from mailsync.models.enums import ConnectionMode, ProviderKind
from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.providers.types import (
    AccountProfile,
    CanonicalMessage,
    CredentialBundle,
    MessageBatch,
    OutboundEnvelope,
    PasswordConnection,
    SentMessage,
)

if TYPE_CHECKING:
    from mailsync.models.mail import EmailAccount
    from mailsync.services.credentials import CredentialStore

logger = logging.getLogger("mailsync.providers")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MailProvider(ABC):
    """Uniform capability set every mail backend implements.

    Adapters are built once per account load by `get_provider`; callers never
    look at `kind` to decide what to do.
    """

    kind: ClassVar[ProviderKind]
    connection_mode: ClassVar[ConnectionMode]

    def __init__(
        self,
        *,
        http: httpx.Client,
        credentials: CredentialStore | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._http = http
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow

    def initial_window(self) -> timedelta:
        return timedelta(days=self._settings.SYNC_WINDOW_DAYS)

    @property
    def redirect_uri(self) -> str:
        return f"{self._settings.API_BASE_URL}/accounts/oauth/callback"

    def authorization_url(self, state: str) -> str:
        raise ProviderError(status_code=400, message=f"{self.kind} accounts do not use OAuth")

    def exchange_code(self, code: str) -> CredentialBundle:
        raise ProviderError(status_code=400, message=f"{self.kind} accounts do not use OAuth")

    def refresh(self, credential: CredentialBundle) -> CredentialBundle:
        raise ProviderAuthError(status_code=401, message=f"{self.kind} credentials cannot be refreshed")

    def fetch_profile(self, access_token: str) -> AccountProfile:
        raise ProviderError(status_code=400, message=f"{self.kind} accounts do not expose a profile")

    def test_connection(self, connection: PasswordConnection) -> None:
        raise ProviderError(status_code=400, message=f"{self.kind} accounts do not use passwords")

    @abstractmethod
    def list_messages(self, account: EmailAccount, *, since: datetime) -> MessageBatch:
        raise NotImplementedError

    @abstractmethod
    def send(self, account: EmailAccount, envelope: OutboundEnvelope) -> SentMessage:
        raise NotImplementedError

    @abstractmethod
    def modify_flags(
        self,
        account: EmailAccount,
        provider_message_id: str,
        *,
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> None:
        """Write read/starred state back to the mailbox; `None` leaves a flag untouched."""
        raise NotImplementedError

    @abstractmethod
    def parse(self, native: Any) -> CanonicalMessage:
        raise NotImplementedError

    def _require_credentials(self) -> CredentialStore:
        if self._credentials is None:
            raise RuntimeError(f"{type(self).__name__} was built without a credential store")
        return self._credentials


class OAuthMailProvider(MailProvider):
    connection_mode = ConnectionMode.oauth

    authorize_url: ClassVar[str]
    scopes: ClassVar[list[str]]

    @property
    @abstractmethod
    def token_url(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def client_id(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def client_secret(self) -> str:
        raise NotImplementedError

    def exchange_code(self, code: str) -> CredentialBundle:
        return self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            previous_refresh_token=None,
        )

    def refresh(self, credential: CredentialBundle) -> CredentialBundle:
        if not credential.refresh_token:
            raise ProviderAuthError(status_code=401, message="No refresh token stored; reconnect the account")
        return self._token_request(
            {
                "refresh_token": credential.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            previous_refresh_token=credential.refresh_token,
        )

    def _access_token(self, account: EmailAccount) -> str:
        return self._require_credentials().get_access_token(account, refresher=self.refresh)

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _token_request(self, data: dict[str, str], *, previous_refresh_token: str | None) -> CredentialBundle:
        try:
            res = self._http.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(status_code=503, message=f"{self.kind} token endpoint unreachable") from e

        if res.status_code >= 500:
            raise ProviderError(status_code=res.status_code, message=f"{self.kind} token endpoint failed")
        if res.status_code >= 400:
            # invalid_grant and friends: the grant is gone, only reconnecting helps.
            # Avoid leaking raw upstream payload (might contain details we don't want to log/return).
            raise ProviderAuthError(status_code=res.status_code, message=f"{self.kind} token request rejected")

        payload = self._json(res, default_message=f"{self.kind} token response is not JSON")
        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderAuthError(status_code=502, message=f"{self.kind} token response missing access_token")

        expires_in = _parse_int(payload.get("expires_in")) or 0
        scope = payload.get("scope") or ""
        return CredentialBundle(
            access_token=access_token,
            # Refresh responses usually omit the refresh token; keep the one we had.
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in) if expires_in else None,
            scopes=[s for s in scope.split(" ") if s],
        )

    def _raise_for_status(self, res: httpx.Response, *, default_message: str) -> None:
        if res.status_code < 400:
            return

        message = default_message
        try:
            payload = res.json()
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                message = error.get("message") or default_message
        except ValueError:
            message = default_message

        if res.status_code == 401:
            raise ProviderAuthError(status_code=res.status_code, message=message)
        raise ProviderError(status_code=res.status_code, message=message)

    def _json(self, res: httpx.Response, *, default_message: str) -> dict[str, Any]:
        try:
            payload = res.json()
        except ValueError as e:
            # HTML error pages from proxies or captive portals; retryable upstream noise.
            raise ProviderError(status_code=502, message=default_message) from e
        if not isinstance(payload, dict):
            raise ProviderError(status_code=502, message=default_message)
        return payload

    def _get(self, url: str, *, access_token: str, params: dict[str, object] | None = None) -> httpx.Response:
        try:
            return self._http.get(url, params=params, headers=self._auth_headers(access_token))
        except httpx.HTTPError as e:
            raise ProviderError(status_code=503, message=f"{self.kind} request failed: {type(e).__name__}") from e

    def _post(self, url: str, *, access_token: str, json: dict | None = None) -> httpx.Response:
        try:
            return self._http.post(url, json=json, headers=self._auth_headers(access_token))
        except httpx.HTTPError as e:
            raise ProviderError(status_code=503, message=f"{self.kind} request failed: {type(e).__name__}") from e

    def _patch(self, url: str, *, access_token: str, json: dict) -> httpx.Response:
        try:
            return self._http.patch(url, json=json, headers=self._auth_headers(access_token))
        except httpx.HTTPError as e:
            raise ProviderError(status_code=503, message=f"{self.kind} request failed: {type(e).__name__}") from e


def _parse_int(v: object) -> int | None:
    if v is None:
        return None
    try:
        return int(v)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None


def _parse_epoch_millis(v: object) -> datetime | None:
    parsed = _parse_int(v)
    if parsed is None:
        return None
    return datetime.fromtimestamp(parsed / 1000.0, tz=UTC)


def _parse_iso(v: object) -> datetime | None:
    if not isinstance(v, str) or not v:
        return None
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
