"""FastAPI application factory."""

import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException

from postlab import __version__
from postlab.api.config import Settings
from postlab.api.database import Database
from postlab.api.exceptions import QuotaExceededError, RequestValidationFailed
from postlab.api.routers import (
    chat_router,
    history_router,
    simulate_router,
    usage_router,
)
from postlab.api.schemas import ErrorResponse, QuotaExceededResponse
from postlab.api.services import AnalysisService
from postlab.api.usage import UsageLedger, utc_now
from postlab.llm.openrouter_client import AnalysisProvider, build_provider
from postlab.models.schemas import iso_utc


def register_exception_handlers(app: FastAPI) -> None:
    """Render every error as a flat `{"error": ...}` body."""

    @app.exception_handler(RequestValidationFailed)
    async def request_validation_failed(request: Request, exc: RequestValidationFailed):
        return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        logger.debug(f"Rejected request body: {exc.errors()}")
        return JSONResponse(
            status_code=400, content=ErrorResponse(error="Invalid request body").model_dump()
        )

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded(request: Request, exc: QuotaExceededError):
        body = QuotaExceededResponse(error=str(exc), remaining=0, reset_at=iso_utc(exc.reset_at))
        return JSONResponse(status_code=429, content=body.model_dump(by_alias=True))

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=str(exc.detail)).model_dump(),
            headers=exc.headers,
        )


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    provider: AnalysisProvider | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Optional settings instance. If not provided, loads from environment.
        database: Optional database. If not provided, opens settings.database_url.
        provider: Optional analysis provider. If not provided, builds an
            OpenRouter client from settings.
        clock: Source of "now" for the usage ledger.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = Settings()
    # Only resources built here are released on shutdown
    owns_database = database is None
    owns_provider = provider is None
    if owns_database:
        database = Database(settings.database_url)
        database.create_all()
    if owns_provider:
        provider = build_provider(settings)

    service = AnalysisService(
        database=database,
        ledger=UsageLedger(database, clock=clock),
        provider=provider,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_provider and provider is not None:
            await provider.aclose()
        if owns_database:
            database.dispose()

    app = FastAPI(title="PostLab API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.analysis_service = service

    # Configure CORS
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if settings.frontend_url:
        origins.append(settings.frontend_url)

    # Allow all origins in development (default: false for production security)
    if (
        settings.allow_all_origins
        or os.getenv("ALLOW_ALL_ORIGINS", "false").lower() == "true"
    ):
        origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(simulate_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")
    app.include_router(history_router, prefix="/api")
    app.include_router(chat_router, prefix="/api")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


# Create default app instance
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8000):
    """Run the web server."""
    import uvicorn

    uvicorn.run(
        app,
        host=host,
        port=port,
        timeout_keep_alive=120,
    )
