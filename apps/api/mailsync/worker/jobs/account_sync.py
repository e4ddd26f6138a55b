from __future__ import annotations

from mailsync.providers.errors import ProviderAuthError
from mailsync.services.sync import AccountNotFoundError, SyncOrchestrator
from mailsync.worker.errors import PermanentJobError
from mailsync.worker.jobs.deps import JobDependencies, parse_payload_uuid
from mailsync.worker.scheduler import JobContext


def account_sync(ctx: JobContext, *, deps: JobDependencies) -> None:
    account_id = parse_payload_uuid(ctx.payload.get("account_id"), field_name="account_id", job="account_sync")

    with deps.http_factory() as http_client:
        orchestrator = SyncOrchestrator(
            ctx.session,
            http=http_client,
            settings=deps.settings,
            clock=deps.clock,
            provider_factory=deps.provider_factory,
            provider_options=deps.provider_options,
            notifier=deps.notifier,
        )
        try:
            orchestrator.sync_account(account_id)
        except AccountNotFoundError as e:
            raise PermanentJobError(str(e)) from e
        except ProviderAuthError as e:
            # Backoff cannot fix a revoked grant; the account is flagged for reconnection.
            raise PermanentJobError(f"Authentication failed; reconnect required: {e}") from e
