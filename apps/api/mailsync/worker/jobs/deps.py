from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

import httpx

from mailsync.core.config import Settings
from mailsync.services.linking import Notifier
from mailsync.services.sync import ProviderFactory, ProviderOptions
from mailsync.worker.errors import PermanentJobError


@dataclass(frozen=True)
class JobDependencies:
    settings: Settings
    http_factory: Callable[[], httpx.Client]
    provider_factory: ProviderFactory | None = None
    provider_options: ProviderOptions = field(default_factory=dict)
    notifier: Notifier | None = None
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))


def parse_payload_uuid(raw: object, *, field_name: str, job: str) -> UUID:
    if not raw:
        raise PermanentJobError(f"{job} payload missing {field_name}")
    try:
        return UUID(str(raw))
    except ValueError as e:
        raise PermanentJobError(f"{job} payload has invalid {field_name}") from e
