"""FastAPI server for the site monitoring core."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.api.monitor_routes import monitor_router
from src.config import Settings, settings as default_settings
from src.health.classifier import SeverityClassifier
from src.health.errors import MonitorError
from src.health.ingestion import DeployIngestor, ErrorIngestor
from src.health.poller import HealthPoller
from src.health.store import MonitorStore
from src.notifications import IncidentNotifier, NotificationDispatcher
from src.notifications.outbox import NotificationOutbox
from src.sites.registry import SiteRegistry

logger = logging.getLogger(__name__)


def build_components(cfg: Settings) -> dict[str, Any]:
    """Construct the monitoring components from explicit configuration."""
    store = MonitorStore(cfg.database_path)
    outbox = NotificationOutbox(cfg.outbox_path)
    notifier = IncidentNotifier(outbox)
    dispatcher = NotificationDispatcher(
        outbox,
        webhook_url=cfg.notify_webhook_url,
        token=cfg.notify_token,
        interval=cfg.notify_interval_seconds,
        max_attempts=cfg.notify_max_attempts,
        backoff=cfg.notify_backoff_seconds,
        max_backoff=cfg.notify_max_backoff_seconds,
    )
    classifier = SeverityClassifier(
        store,
        notifier,
        failure_threshold=cfg.failure_threshold,
        history_window=cfg.failure_history_window,
    )
    poller = HealthPoller(
        store,
        classifier,
        max_concurrency=cfg.max_concurrent_probes,
        interval=cfg.poll_interval_seconds,
    )
    return {
        "store": store,
        "outbox": outbox,
        "notifier": notifier,
        "dispatcher": dispatcher,
        "classifier": classifier,
        "poller": poller,
        "error_ingestor": ErrorIngestor(store),
        "deploy_ingestor": DeployIngestor(store),
    }


def _make_lifespan(cfg: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize shared resources on startup."""
        components = build_components(cfg)
        for name, component in components.items():
            setattr(app.state, name, component)

        registry = SiteRegistry(cfg.sites_file)
        try:
            registry.sync(app.state.store)
        except Exception:
            logger.exception("Failed to sync %s, running with stored sites only", cfg.sites_file)
        app.state.registry = registry

        try:
            await app.state.dispatcher.start()
        except Exception:
            logger.exception("Notification dispatcher failed to start")

        try:
            await app.state.poller.start()
        except Exception:
            logger.exception("Health poller failed to start")

        yield

        # Shutdown
        await app.state.poller.stop()
        await app.state.dispatcher.stop()
        app.state.store.close()

    return lifespan


def _error_response(status_code: int, body: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"error": ..., "details": ...}``."""

    @app.exception_handler(MonitorError)
    async def monitor_error_handler(request: Request, exc: MonitorError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(exc.status_code, exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
        return _error_response(exc.status_code, {"error": error})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        details = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
        ]
        return _error_response(400, {"error": "Invalid request body", "details": details})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, {"error": "Internal server error", "details": str(exc)})


def create_app(cfg: Settings | None = None) -> FastAPI:
    cfg = cfg or default_settings
    app = FastAPI(
        title="Site Monitor",
        version="0.1.0",
        lifespan=_make_lifespan(cfg),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(monitor_router, prefix="/api")

    return app


app = create_app()
