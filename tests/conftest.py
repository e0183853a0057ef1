"""Shared pytest fixtures for test suite"""
import base64
import os

# Settings are read once at import time; configure before importing the app
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-length-0123456789")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_stripe_secret")
os.environ.setdefault(
    "IDENTITY_WEBHOOK_SECRET",
    "whsec_" + base64.b64encode(b"identity-webhook-secret-for-tests").decode(),
)
os.environ.setdefault("DATABASE_URL", "sqlite:///./data/unused.db")

from typing import AsyncGenerator

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.app import app
from tokenledger.db.session import Database


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh file-backed SQLite database per test (concurrent connections need a file)."""
    db = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    await db.create_all()
    try:
        yield db
    finally:
        await db.dispose()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as db_session:
        yield db_session


@pytest.fixture
async def client(database: Database) -> AsyncGenerator[httpx.AsyncClient, None]:
    """In-process HTTP client bound to the test database"""
    app.state.db = database
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.state.db = None
