from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from dotenv import load_dotenv

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

load_dotenv()

from .config import Settings, settings as default_settings
from .db.repository import Repositories
from .errors import NotFoundError, PersistenceError, UsageLimitExceeded
from .schemas import UsageTrackRequest, utcnow
from .services import build_services
from .tools.handlers import TOOL_HANDLERS

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    repos: Repositories | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_services(settings, repos, clock=clock)

    app = FastAPI(title="Receptionist API")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(UsageLimitExceeded)
    async def usage_limit_exceeded(request: Request, exc: UsageLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "error": "TRIAL_LIMIT_EXCEEDED",
                "limitType": exc.limit_type,
                "message": exc.message,
                "minutesUsed": exc.minutes_used,
                "minutesLimit": exc.minutes_limit,
                "callsUsed": exc.calls_used,
                "callsLimit": exc.calls_limit,
                "redirectTo": settings.upgrade_redirect_path,
                "trialEnded": True,
            },
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/vapi/webhook")
    async def vapi_webhook(request: Request) -> JSONResponse:
        status_code, body = services.webhooks.handle(request.headers, await request.body())
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/tools")
    async def tools_health() -> dict:
        return {"status": "ok", "tools": sorted(TOOL_HANDLERS)}

    @app.post("/tools")
    async def invoke_tool(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        status_code, body = services.tools.dispatch(request.headers, payload)
        return JSONResponse(status_code=status_code, content=body)

    @app.post("/usage/track-with-limits")
    async def track_usage(request: Request) -> JSONResponse:
        try:
            payload = UsageTrackRequest.model_validate(await request.json())
        except (ValueError, ValidationError):
            return JSONResponse(status_code=400, content={"error": "Invalid request body"})
        if not payload.tenant_id or payload.duration_seconds is None:
            return JSONResponse(
                status_code=400,
                content={"error": "tenantId and durationSeconds are required"},
            )
        try:
            result = services.meter.record_call(
                payload.tenant_id, payload.duration_seconds, call_id=payload.call_id
            )
        except NotFoundError:
            return JSONResponse(status_code=404, content={"error": "Tenant not found"})
        except PersistenceError:
            logger.exception("Usage tracking failed for tenant %s", payload.tenant_id)
            return JSONResponse(status_code=500, content={"error": "Failed to track usage"})
        return JSONResponse(content=result.to_response())

    @app.get("/usage/track-with-limits")
    async def usage_snapshot(tenantId: str | None = None) -> JSONResponse:
        if not tenantId:
            return JSONResponse(status_code=400, content={"error": "tenantId is required"})
        try:
            snapshot = services.meter.snapshot(tenantId)
        except NotFoundError:
            return JSONResponse(status_code=404, content={"error": "Tenant not found"})
        return JSONResponse(content=snapshot)

    @app.get("/trial/status")
    async def trial_status(tenantId: str | None = None) -> JSONResponse:
        if not tenantId:
            return JSONResponse(status_code=400, content={"error": "tenantId is required"})
        return JSONResponse(content=services.meter.can_make_call(tenantId).to_response())

    return app


app = create_app()
