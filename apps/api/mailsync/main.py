from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mailsync.core.config import get_settings
from mailsync.core.middleware import request_context_middleware
from mailsync.routers.accounts import router as accounts_router
from mailsync.routers.health import metrics
from mailsync.routers.health import router as health_router
from mailsync.routers.messages import router as messages_router
from mailsync.routers.ops import router as ops_router
from mailsync.routers.tracking import router as tracking_router
from mailsync.worker.handlers import build_scheduler
from mailsync.worker.scheduler import JobScheduler


def create_app(*, scheduler: JobScheduler | None = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="CRM Mail Sync API", version=settings.VERSION)
    # The API only enqueues; workers (`python -m mailsync.worker`) run the jobs.
    app.state.scheduler = scheduler or build_scheduler(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context_middleware(settings))

    app.include_router(health_router)
    if settings.ENABLE_PROMETHEUS_METRICS:
        app.add_api_route(settings.PROMETHEUS_METRICS_PATH, metrics, methods=["GET"], include_in_schema=False)
    app.include_router(accounts_router)
    app.include_router(messages_router)
    app.include_router(tracking_router)
    app.include_router(ops_router)
    return app


app = create_app()
