"""ASGI entry-point for the FastAPI application.

This module
1. instantiates the :class:`fastapi.FastAPI` application;
2. wires the API routers located in ``mapedge.api`` plus the root-level image
   proxy routes;
3. registers global exception handlers (every error leaves as
   ``{"error": "<message>"}``) and CORS; and
4. makes sure the checkpoint table and blob root exist.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mapedge.config import settings
from mapedge.exceptions import AppBaseException
from mapedge.logging_config import setup_logging
from mapedge.utils.storage import ensure_dir_exists

from mapedge.api import api_router, routes_images


# ---------------------------------------------------------------------------
# Logging must be configured as soon as possible so that any errors during
# import/start-up are captured.
# ---------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def create_app() -> FastAPI:  # noqa: D401 – factory nomenclature is fine
    """Wire and return the FastAPI application instance."""

    app = FastAPI(
        title="mapedge",
        version="0.1.0",
        docs_url="/api/docs",
    )

    @app.on_event("startup")
    async def _startup_checks() -> None:
        logger.info("Running start-up checks …")
        try:
            ensure_dir_exists(Path(settings.BLOB_ROOT))
        except OSError as exc:  # pragma: no cover
            logger.critical("Cannot create/access blob root %s – %s", settings.BLOB_ROOT, exc)
        if not settings.REGEN_TOKEN:
            logger.warning("REGEN_TOKEN is empty; every admin call will be rejected")
        logger.info("Start-up checks finished.")

    # ------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Request validation error: %s", exc.errors())
        return error_response(400, _validation_message(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning("HTTP exception %s: %s", exc.status_code, exc.detail)
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(AppBaseException)
    async def _app_error_handler(request: Request, exc: AppBaseException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Application exception on %s: %s", request.url.path, exc.detail, exc_info=exc)
        else:
            logger.warning("Application exception on %s: %s", request.url.path, exc.detail)
        return error_response(exc.status_code, exc.detail)

    @app.exception_handler(Exception)
    async def _generic_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return error_response(500, "Internal Server Error")

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    app.include_router(api_router, prefix="/api")
    app.include_router(routes_images.router, tags=["images"])

    # ------------------------------------------------------------------
    # Ensure the checkpoint table exists.
    # ------------------------------------------------------------------

    try:
        from mapedge.db.database import create_tables  # local import to avoid circular deps

        create_tables()
    except Exception as exc:  # pragma: no cover
        logger.exception("Failed to create DB schema: %s", exc)

    @app.get("/api/health")
    async def _health() -> dict[str, str]:
        return {"status": "ok"}

    return app


# Instantiate at import time so `uvicorn mapedge.main:app` works.
app: FastAPI = create_app()
