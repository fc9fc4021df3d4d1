"""FastAPI application factory for the authgate service."""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..db.base import configure_database, create_session, dispose_database
from .config import settings
from .errors import setup_exception_handlers
from .logging import bind_contextvars, clear_contextvars, setup_logging
from .routes import admin, auth, sessions, tokens, two_factor
from .runtime import SecurityRuntime

setup_logging()


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
    """Initialise and tear down shared application resources."""

    runtime: SecurityRuntime = app.state.security
    configure_database(settings.database_url, echo=settings.sqlalchemy_echo)
    runtime.attach_sweeper(create_session)
    await runtime.start()
    try:
        yield
    finally:
        await runtime.aclose()
        await dispose_database()


def create_app(
    *,
    api_prefix: str | None = None,
    runtime: SecurityRuntime | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers are mounted. When
        ``None`` the routers are mounted at the application root.
    runtime:
        Pre-built security runtime. Tests pass one with their own clock and
        budgets; otherwise it is built from the global settings.
    """

    app = FastAPI(title="Authgate", version="1.0", lifespan=_lifespan)
    app.state.security = runtime or SecurityRuntime.from_settings()
    setup_exception_handlers(app)

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        clear_contextvars()
        bind_contextvars(request_id=request_id, path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        finally:
            clear_contextvars()
        response.headers["X-Request-ID"] = request_id
        return response

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    router_prefix = api_prefix.rstrip("/") if api_prefix else ""
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    for module in (auth, tokens, sessions, two_factor, admin):
        app.include_router(module.router, prefix=router_prefix)

    return app


app = create_app()
