"""
Pytest configuration and fixtures for the RenoAI server tests.
"""

import os

SECRET = "test-secret-key-0123456789-abcdefghijklmnop"
PASSWORD = "correct-horse-battery"

# main.py builds its app at import time from environment settings
os.environ.setdefault("JWT_SECRET_KEY", SECRET)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import httpx
import pytest
from dependency_injector import providers

from core.cache import CacheService
from core.config import Settings
from core.container import container
from core.database import Database
from core.logging import configure_logging
from services.token_issuer import TokenClaims, TokenIssuer
from services.user_auth import UserAuthService

configure_logging(Settings())


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CacheService:
    """Cache with the production defaults and a fake clock."""
    return CacheService(default_ttl=300, max_size=1000, sweep_interval=60, clock=clock)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        jwt_secret_key=SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        log_format="console",
        cache_response_ttl=60,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def token_issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def expired_issuer() -> TokenIssuer:
    """Same secret, but every token it signs is already expired."""
    return TokenIssuer(
        SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=1),
        now=lambda: datetime.now(timezone.utc) - timedelta(days=2),
    )


@pytest.fixture
def user_auth(database: Database, token_issuer: TokenIssuer, cache: CacheService,
              settings: Settings) -> UserAuthService:
    return UserAuthService(database=database, token_issuer=token_issuer, cache=cache, settings=settings)


@pytest.fixture
def wired_container(settings, database, cache, token_issuer):
    """Point the application container at the test services."""
    container.settings.override(providers.Object(settings))
    container.database.override(providers.Object(database))
    container.cache.override(providers.Object(cache))
    container.token_issuer.override(providers.Object(token_issuer))
    yield container
    container.reset_override()


@pytest.fixture
def app(wired_container, settings):
    from main import create_app
    return create_app(settings)


@pytest.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def expired_access_token(issuer: TokenIssuer, user) -> str:
    return issuer.issue(TokenClaims(subject=user.id, email=user.email, role=user.role)).access_token
