"""
FastAPI application factory for the planner command server.

This module creates the FastAPI app with:
- CORS configuration for the web client
- CommandServer lifecycle management
- Command and audit routes
- CommandError -> envelope response mapping
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..commands import Envelope
from ..errors import CommandError, http_status_for
from ..server import CommandServer
from .routes import router
from .settings import Settings


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage CommandServer lifecycle."""
    server = getattr(app.state, "server", None) or CommandServer()
    await server.start()
    app.state.server = server

    yield

    await server.stop()


async def command_error_handler(request: Request, exc: CommandError) -> JSONResponse:
    """Render errors raised outside the router (auth, path parsing) as envelopes."""
    return JSONResponse(
        status_code=http_status_for(exc.code.value),
        content=Envelope.from_error(exc).to_dict(),
    )


def create_app(
    server: CommandServer | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        server: Optional pre-built server (built from env on startup if not provided)
        settings: Optional HTTP settings (loaded from env if not provided)
    """
    settings = settings or Settings()

    app = FastAPI(
        title="Planner Command Server",
        description=(
            "Idempotent, audited create/read/update/delete commands for "
            "events, assignments, exams, study sessions and courses."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if server is not None:
        app.state.server = server

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CommandError, command_error_handler)

    app.include_router(router, prefix="/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "planner-command-server", "version": __version__}

    return app
