from __future__ import annotations

from mailsync.providers.errors import ProviderAuthError, ProviderError
from mailsync.services.outbound import OutboundError, OutboundService, is_retryable_send_error
from mailsync.worker.errors import PermanentJobError
from mailsync.worker.jobs.deps import JobDependencies, parse_payload_uuid
from mailsync.worker.scheduler import JobContext


def outbound_send(ctx: JobContext, *, deps: JobDependencies) -> None:
    message_id = parse_payload_uuid(ctx.payload.get("message_id"), field_name="message_id", job="outbound_send")

    with deps.http_factory() as http_client:
        service = OutboundService(
            ctx.session,
            http=http_client,
            settings=deps.settings,
            clock=deps.clock,
            provider_factory=deps.provider_factory,
            provider_options=deps.provider_options,
            notifier=deps.notifier,
            scheduler=ctx.scheduler,
        )
        try:
            service.deliver(message_id)
        except (LookupError, OutboundError) as e:
            raise PermanentJobError(str(e)) from e
        except ProviderAuthError as e:
            raise PermanentJobError(f"Authentication failed; reconnect required: {e}") from e
        except ProviderError as e:
            if not is_retryable_send_error(e):
                raise PermanentJobError(f"Provider rejected the message: {e}") from e
            if ctx.attempt >= deps.settings.JOB_MAX_ATTEMPTS:
                # Out of retries; park it with the drafts rather than in the outbox.
                service.return_to_drafts(message_id)
            raise
