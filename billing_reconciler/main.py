from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_reconciler.core.settings import S, Settings
from billing_reconciler.metrics import metrics_endpoint, metrics_middleware, set_app_info
from billing_reconciler.routers.webhook import router as webhook_router


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(settings: Settings = S) -> FastAPI:
    configure_logging(settings)
    app = FastAPI(title="Tenant Billing Reconciler", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    if settings.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(webhook_router)

    return app


app = create_app()
