"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any chatpro import so the
cached settings pick them up.
"""

import asyncio
import os

import pytest

os.environ.setdefault("APP_ID", "test-app")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("CHALLENGE_SECRET", "test-secret")

# Clear settings cache before any chatpro imports to ensure test env vars are used
from chatpro.config import get_settings
get_settings.cache_clear()

from chatpro.auth import AuthController
from chatpro.providers import LocalChallengeProvider
from chatpro.schemas import Country
from chatpro.storage import DocumentStore


TEST_APP_ID = "test-app"
TEST_SECRET = "test-secret"
YEMEN = Country(code="+967", name="Yemen")


@pytest.fixture
async def store():
    """Fresh in-memory document store for each test."""
    store = DocumentStore("sqlite://")
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def provider():
    return LocalChallengeProvider(secret=TEST_SECRET, ttl_seconds=300)


@pytest.fixture
def auth(store, provider):
    return AuthController(store, provider, app_id=TEST_APP_ID)


@pytest.fixture
def settle():
    """Let background subscription tasks run until ``predicate`` holds."""
    async def _settle(predicate=None, attempts: int = 50) -> bool:
        for _ in range(attempts):
            if predicate is not None and predicate():
                return True
            await asyncio.sleep(0)
        return predicate() if predicate is not None else True
    return _settle


@pytest.fixture
def make_user(store):
    """Sign a new user all the way to READY on their own controller."""
    async def _make(name: str, local_number: str) -> AuthController:
        provider = LocalChallengeProvider(secret=TEST_SECRET)
        controller = AuthController(store, provider, app_id=TEST_APP_ID)
        await controller.submit_phone(YEMEN, local_number)
        await controller.submit_code(provider.last_code(YEMEN.code + local_number))
        await controller.complete_profile(name)
        return controller
    return _make
