from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "mailsync_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "mailsync_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_MESSAGES_INGESTED_TOTAL = Counter(
    "mailsync_messages_ingested_total",
    "Provider messages processed by account sync.",
    labelnames=("provider", "outcome"),
)
_ACCOUNT_SYNC_DURATION_SECONDS = Histogram(
    "mailsync_account_sync_duration_seconds",
    "Duration of one account sync pass in seconds.",
    labelnames=("provider",),
)
_JOBS_TOTAL = Counter(
    "mailsync_jobs_total",
    "Background jobs finished by type and outcome.",
    labelnames=("type", "outcome"),
)
_TOKEN_REFRESH_TOTAL = Counter(
    "mailsync_token_refresh_total",
    "OAuth access token refresh attempts.",
    labelnames=("provider", "outcome"),
)
_TRACKING_EVENTS_TOTAL = Counter(
    "mailsync_tracking_events_total",
    "Recorded email tracking events.",
    labelnames=("event_type",),
)


def observe_http_request(*, method: str, path: str, status_code: int, duration_ms: int) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def observe_message_ingested(*, provider: str, outcome: str) -> None:
    _MESSAGES_INGESTED_TOTAL.labels(provider=provider, outcome=outcome).inc()


def observe_account_sync(*, provider: str, duration_seconds: float) -> None:
    _ACCOUNT_SYNC_DURATION_SECONDS.labels(provider=provider).observe(max(0.0, duration_seconds))


def observe_job(*, job_type: str, outcome: str) -> None:
    _JOBS_TOTAL.labels(type=job_type, outcome=outcome).inc()


def observe_token_refresh(*, provider: str, outcome: str) -> None:
    _TOKEN_REFRESH_TOTAL.labels(provider=provider, outcome=outcome).inc()


def observe_tracking_event(*, event_type: str) -> None:
    _TRACKING_EVENTS_TOTAL.labels(event_type=event_type).inc()
