from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from dataclasses import dataclass
from uuid import UUID

from mailsync.core.config import get_settings


class InvalidStateError(ValueError):
    pass


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep query strings/headers compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _sign(payload: bytes) -> str:
    settings = get_settings()
    digest = hmac.new(settings.STATE_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    return _b64encode(digest)


@dataclass(frozen=True)
class OAuthState:
    user_id: UUID
    provider: str
    nonce: str
    expires_at: int


def encode_oauth_state(*, user_id: UUID, provider: str, now_ts: float | None = None) -> str:
    settings = get_settings()
    issued = int(now_ts if now_ts is not None else time.time())
    body = json.dumps(
        {
            "exp": issued + settings.OAUTH_STATE_TTL_SECONDS,
            "nonce": new_random_token(nbytes=12),
            "provider": provider,
            "user_id": str(user_id),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    return f"{_b64encode(body)}.{_sign(body)}"


def decode_oauth_state(token: str, *, now_ts: float | None = None) -> OAuthState:
    try:
        encoded_body, signature = token.split(".", 1)
        body = _b64decode(encoded_body)
    except ValueError as e:
        raise InvalidStateError("Malformed state") from e

    if not hmac.compare_digest(signature, _sign(body)):
        raise InvalidStateError("State signature mismatch")

    try:
        data = json.loads(body)
        state = OAuthState(
            user_id=UUID(str(data["user_id"])),
            provider=str(data["provider"]),
            nonce=str(data["nonce"]),
            expires_at=int(data["exp"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidStateError("State payload invalid") from e

    current = now_ts if now_ts is not None else time.time()
    if state.expires_at < current:
        raise InvalidStateError("State expired")
    return state
