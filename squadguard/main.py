from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.middleware.cors import CORSMiddleware

from .config import Settings, settings
from .headers import apply_security_headers
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, generate_latest
from .middleware import SecurityGuard
from .rate_limit import EndpointRateLimiter
from .routers.security import router as security_router
from .security_events import SecurityEventTracker
from .sweeper import ExpirySweeper

configure_logging()
logger = logging.getLogger("squadguard.app")


def create_app(app_settings: Settings = settings, tracker: Optional[SecurityEventTracker] = None) -> FastAPI:
    tracker = tracker or SecurityEventTracker.from_settings(app_settings)
    limiter = EndpointRateLimiter.from_settings(app_settings)
    guard = SecurityGuard(tracker=tracker, limiter=limiter, settings=app_settings)
    sweeper = ExpirySweeper(
        tracker.sweep_expired,
        limiter.prune,
        interval_seconds=app_settings.sweep_interval_seconds,
    )

    app = FastAPI(title="SquadGuard API", version="1.0.0")
    app.state.settings = app_settings
    app.state.tracker = tracker
    app.state.limiter = limiter
    app.state.sweeper = sweeper

    @app.on_event("startup")
    async def startup_event() -> None:
        await sweeper.start()
        logger.info(
            "Security guard startup complete",
            extra={"event": "startup", "duration_seconds": tracker.block_seconds},
        )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await sweeper.stop()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_guard_middleware(request: Request, call_next):
        return await guard(request, call_next)

    # Registered last so it wraps the guard, 403/429 responses included.
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        response = await call_next(request)
        if app_settings.security_headers_enabled:
            apply_security_headers(request, response, app_settings)
        return response

    @app.get("/health")
    @app.get("/api/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/metrics")
    async def metrics() -> Response:
        if not app_settings.enable_prometheus_metrics:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(security_router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    port = int(os.getenv("PORT", 8001))
    uvicorn.run("squadguard.main:app", host=os.getenv("HOST", "0.0.0.0"), port=port, reload=not settings.is_production)


if __name__ == "__main__":
    run()
