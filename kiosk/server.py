"""Kiosk console server.

Start with::

    python -m kiosk.server
    # or
    uvicorn kiosk.server:create_app --factory --host 0.0.0.0 --port 4000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from kiosk import __version__
from kiosk.api import client_router, router
from kiosk.console import KioskConsole
from kiosk.errors import KioskError, RateLimited
from kiosk.settings import Settings

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────
# Error handlers
# ──────────────────────────────────────────────────────────────────

async def _kiosk_error(request: Request, exc: KioskError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        {"ok": False, "error": detail, "code": "invalid_input"}, status_code=400
    )


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"ok": False, "error": "Internal server error"}, status_code=500)


# ──────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────

def create_app(settings: Settings | None = None, console: KioskConsole | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    console = console or KioskConsole(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await console.start()
        try:
            yield
        finally:
            await console.stop()

    app = FastAPI(title="Kiosk Console", version=__version__, lifespan=lifespan)
    app.state.console = console

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.force_https:
        @app.middleware("http")
        async def redirect_to_https(request: Request, call_next):
            proto = request.headers.get("x-forwarded-proto", request.url.scheme)
            if proto.split(",")[0].strip() != "https":
                return RedirectResponse(str(request.url.replace(scheme="https")), status_code=301)
            return await call_next(request)

    app.add_exception_handler(KioskError, _kiosk_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unhandled)

    app.include_router(router)
    app.include_router(client_router)

    if settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
    else:
        logger.info("Static directory %s not found; admin UI not served", settings.static_dir)

    return app


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    settings = Settings.from_env()
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting Kiosk Console on %s:%d", settings.host, settings.port)
    uvicorn.run(
        "kiosk.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
