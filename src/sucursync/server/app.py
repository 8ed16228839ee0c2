from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sucursync.config import Settings
from sucursync.errors import SucursyncError
from sucursync.server.auth import (
    APIKeyAuthProvider,
    AuthProvider,
    NoAuthProvider,
    make_auth_dependency,
)
from sucursync.server.routes import make_router
from sucursync.server.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    import httpx

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    auth: AuthProvider | Callable[..., Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create a configured sucursync FastAPI application.

    Args:
        settings: Server configuration; read from the environment when omitted.
        auth: Authentication provider, raw FastAPI dependency, or *None*
              (API key auth when ``settings.api_key`` is set, otherwise none).
        transport: httpx transport for calls to peer branches; tests use it
              to route peers to in-process apps.
    """
    settings = settings or Settings()

    if auth is None:
        provider: AuthProvider = (
            APIKeyAuthProvider(settings.api_key) if settings.api_key else NoAuthProvider()
        )
        auth_dep = make_auth_dependency(provider)
    elif isinstance(auth, AuthProvider):
        auth_dep = make_auth_dependency(auth)
    elif callable(auth):
        auth_dep = auth
    else:
        msg = f"auth must be an AuthProvider, callable, or None, got {type(auth)}"
        raise TypeError(msg)

    state = AppState(settings, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await state.startup()
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(title="sucursync", lifespan=lifespan)
    app.state = state

    @app.exception_handler(SucursyncError)
    async def _sucursync_error(request: Request, exc: SucursyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    app.include_router(make_router(auth_dep=auth_dep), prefix="/v1")
    return app
