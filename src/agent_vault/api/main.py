# AgentVault - FastAPI Backend
#
# REST API for the vault UI + WebSocket endpoint for the trusted agent.
# Listens on localhost only; browser origins other than localhost are
# refused for both HTTP (CORS) and the agent socket.

import asyncio
import logging
import re
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import VaultSettings
from ..core.audit_log import EventType
from ..core.exceptions import LockedOutError, RateLimitedError, VaultError
from ..service import VaultService
from .rate_limiter import InMemoryRateLimiter
from .vault_routes import router as vault_router

logger = logging.getLogger(__name__)

AUTO_LOCK_CHECK_SECONDS = 30
_LOCAL_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")


def create_app(
    settings: Optional[VaultSettings] = None,
    service: Optional[VaultService] = None,
) -> FastAPI:
    """
    Build the FastAPI app around one VaultService.

    Args:
        settings: Configuration (default: from environment)
        service: Pre-built service (tests); built from settings if None
    """
    settings = settings or (service.settings if service else VaultSettings.from_env())
    service = service or VaultService(settings)

    app = FastAPI(
        title="AgentVault API",
        description="Local secret vault with agent credential sharing",
        version="1.0.0",
    )
    app.state.vault_service = service
    app.state.rate_limiter = InMemoryRateLimiter()
    app.state.request_rate_limit = settings.request_rate_limit
    app.state.auto_lock_task = None

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=_LOCAL_ORIGIN.pattern,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.include_router(vault_router)

    # ── Error rendering ──────────────────────────────────────────────

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        headers = None
        if isinstance(exc, (LockedOutError, RateLimitedError)):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{field}: {message}" if field else message,
                     "code": "validation_error", "field": field},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "internal_error"},
        )

    # ── Agent WebSocket ──────────────────────────────────────────────

    @app.websocket("/ws")
    async def agent_websocket(websocket: WebSocket):
        """
        Sharing channel endpoint for the trusted agent.

        The first message must be {type: auth, token}; see sharing.channel.
        """
        origin = websocket.headers.get("origin")
        if origin and not _LOCAL_ORIGIN.match(origin):
            logger.warning("Rejected WebSocket connection from origin %s", origin)
            await websocket.close(code=1008, reason="Invalid origin")
            return

        await websocket.accept()
        await service.channel.serve(websocket)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def _auto_lock_loop():
        while True:
            await asyncio.sleep(AUTO_LOCK_CHECK_SECONDS)
            try:
                service.check_auto_lock()
            except Exception:
                logger.exception("Auto-lock check failed")

    @app.on_event("startup")
    async def startup_event():
        service.audit.log_event(EventType.SYSTEM_START, {"host": settings.host, "port": settings.port})
        app.state.auto_lock_task = asyncio.create_task(_auto_lock_loop())

    @app.on_event("shutdown")
    async def shutdown_event():
        task = app.state.auto_lock_task
        if task is not None:
            task.cancel()
        service.shutdown()

    return app


def start_api_server(settings: VaultSettings) -> None:
    """Run the vault API with uvicorn (blocking)."""
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
