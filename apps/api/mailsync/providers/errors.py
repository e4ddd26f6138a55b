from __future__ import annotations


class ProviderError(RuntimeError):
    """Transient provider or network failure; the job scheduler may retry it."""

    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Credential is expired or revoked and could not be refreshed; needs reconnection."""


class MessageParseError(ValueError):
    pass
