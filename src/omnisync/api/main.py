"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from omnisync.api.routes import briefing, calendar, connections, sync as sync_routes
from omnisync.errors import (
    BriefingParseError,
    ConnectionNotFoundError,
    DlpUnavailableError,
    InvalidTransitionError,
    JobInProgressError,
    ProviderError,
    requires_reconnect,
)


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConnectionNotFoundError)
    async def _not_found(request: Request, exc: ConnectionNotFoundError):
        return _error(404, exc)

    @app.exception_handler(ProviderError)
    async def _provider(request: Request, exc: ProviderError):
        if requires_reconnect(exc):
            return _error(409, exc, reconnect=True)
        return _error(502, exc, retryable=exc.status_code == 429 or exc.status_code >= 500)

    @app.exception_handler(DlpUnavailableError)
    async def _dlp(request: Request, exc: DlpUnavailableError):
        return _error(503, exc)

    @app.exception_handler(BriefingParseError)
    async def _briefing(request: Request, exc: BriefingParseError):
        return _error(502, exc)

    @app.exception_handler(InvalidTransitionError)
    async def _transition(request: Request, exc: InvalidTransitionError):
        return _error(409, exc)

    @app.exception_handler(JobInProgressError)
    async def _in_progress(request: Request, exc: JobInProgressError):
        return _error(409, exc, retryable=True)


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Engine creation runs create_all + migrations (idempotent)
        from omnisync.db.engine import get_engine
        get_engine()
        yield

    app = FastAPI(
        title="Omnisync API",
        description="Multi-provider sync engine with DLP gate and daily briefing",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(connections.router, prefix="/connections", tags=["connections"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(calendar.router, prefix="/calendar", tags=["calendar"])
    app.include_router(briefing.router, prefix="/briefing", tags=["briefing"])
    _register_error_handlers(app)

    return app


# Module-level app instance for uvicorn
app = create_app()
