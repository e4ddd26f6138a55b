from __future__ import annotations

from collections.abc import Generator

import httpx

from mailsync.core.config import get_settings


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Centralize HTTP client configuration (timeouts, etc) so we can override in tests.
    with httpx.Client(timeout=get_settings().HTTP_TIMEOUT_SECONDS) as client:
        yield client
