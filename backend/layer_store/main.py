"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging, CORS middleware, the user layer, auth and WebSocket routers,
the ``{data, error}`` error envelope and a health check endpoint. The
layer repository and the change broadcaster are created in the lifespan
and released on shutdown.

Example:
    The application can be run with uvicorn:
        $ uvicorn layer_store.main:app --reload

    Or imported and used programmatically:
        >>> from layer_store.main import app
        >>> # Use app in ASGI server
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import fastapi
from fastapi import concurrency, exceptions, responses
from fastapi.middleware import cors
from loguru import logger
from starlette import exceptions as starlette_exceptions

from layer_store.api import auth, user_layers, ws
from layer_store.core import config, errors
from layer_store.core import logging as app_logging
from layer_store.db import database
from layer_store.services import broadcast

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


def _envelope(status_code: int, message: str) -> responses.JSONResponse:
    return responses.JSONResponse(
        status_code=status_code,
        content={"data": None, "error": message},
    )


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Own the repository and broadcaster for the lifetime of the app."""
    settings = config.get_settings()
    repo = await concurrency.run_in_threadpool(
        database.get_layer_repository, settings
    )
    manager = broadcast.ConnectionManager()
    app.state.layer_repository = repo
    app.state.broadcaster = manager
    logger.info("Layer store started with {} backend", settings.repository_backend)
    try:
        yield
    finally:
        await manager.close()
        await concurrency.run_in_threadpool(repo.close)
        logger.info("Layer store stopped")


async def _layer_store_error(
    _request: fastapi.Request, exc: errors.LayerStoreError
) -> responses.JSONResponse:
    logger.info("Rejected request ({}): {}", exc.status_code, exc.message)
    return _envelope(exc.status_code, exc.message)


async def _http_error(
    _request: fastapi.Request, exc: starlette_exceptions.HTTPException
) -> responses.JSONResponse:
    return _envelope(exc.status_code, str(exc.detail))


async def _validation_error(
    _request: fastapi.Request, exc: exceptions.RequestValidationError
) -> responses.JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return _envelope(400, f"Invalid request: {location} {first.get('msg', '')}".strip())


async def _unexpected_error(
    request: fastapi.Request, exc: Exception
) -> responses.JSONResponse:
    logger.opt(exception=exc).error(
        "{} {} failed: {}", request.method, request.url.path, exc
    )
    return _envelope(500, f"Failed to process request: {exc}")


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the user layer, auth and WebSocket
    routers, registers the error envelope handlers and adds a health
    check endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from layer_store.main import app
    """
    settings = config.get_settings()
    app_logging.configure_logging(settings)
    app = fastapi.FastAPI(title="Layer Store", version="0.1.0", lifespan=lifespan)

    app.include_router(user_layers.router)
    app.include_router(auth.router)
    app.include_router(ws.router)

    app.add_exception_handler(errors.LayerStoreError, _layer_store_error)  # type: ignore[arg-type]
    app.add_exception_handler(starlette_exceptions.HTTPException, _http_error)  # type: ignore[arg-type]
    app.add_exception_handler(exceptions.RequestValidationError, _validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unexpected_error)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
