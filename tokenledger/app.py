"""FastAPI application factory — entry point for the ledger service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tokenledger.config import get_settings
from tokenledger.db.session import Database
from tokenledger.errors import LedgerError, ValidationError
from tokenledger.routers import billing, content, tokens, webhooks
from tokenledger.services.billing_service import init_stripe
from tokenledger.utils import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings = get_settings()

    # Tests and scripts may install their own handle before startup
    owns_db = getattr(app.state, "db", None) is None
    if owns_db:
        app.state.db = Database(settings.database_url, echo=settings.debug)
    database: Database = app.state.db

    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    if database.is_sqlite:
        await database.create_all()

    if settings.stripe_secret_key:
        init_stripe()

    yield

    if owns_db:
        await database.dispose()
        app.state.db = None


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.db = None

    # --- Error handlers ---
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(exc.status_code, exc.code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", ValidationError.message) if errors else ValidationError.message
        return _error_response(ValidationError.status_code, ValidationError.code, message)

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, "internal_error", "An unexpected error occurred. Please try again later.")

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(tokens.router)
    app.include_router(content.router)
    app.include_router(billing.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
