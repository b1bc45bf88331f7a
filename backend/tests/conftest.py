"""
Shared test fixtures and configuration for Blog CMS backend tests.
"""
import os
import uuid
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-for-testing-only-0123456789"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-for-testing-only-0123456789"
os.environ["BCRYPT_SALT_ROUNDS"] = "4"
os.environ.pop("REDIS_URL", None)
os.environ.pop("BREVO_API_KEY", None)

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Monotonic clock for the in-memory store that tests can move forward."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryUserDirectory:
    """Dict-backed user directory with the same contract as the SQL one."""

    def __init__(self):
        self.users = {}

    async def find_by_email(self, email: str):
        from dataclasses import replace

        for user in self.users.values():
            if user.email == email:
                return replace(user)
        return None

    async def find_by_id(self, user_id: str):
        from dataclasses import replace

        user = self.users.get(user_id)
        return replace(user) if user else None

    async def create(self, **fields):
        from dataclasses import replace
        from blog_cms.core.exceptions import DuplicateEmailError
        from blog_cms.services.user_directory import UserRecord

        if any(u.email == fields["email"] for u in self.users.values()):
            raise DuplicateEmailError()
        now = datetime.now(timezone.utc)
        user = UserRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **fields)
        self.users[user.id] = user
        return replace(user)

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        user = self.users[user_id]
        user.password_hash = password_hash
        user.updated_at = datetime.now(timezone.utc)

    def set_status(self, user_id: str, status: str) -> None:
        self.users[user_id].status = status


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_config():
    """Auth configuration with a low bcrypt cost for fast tests."""
    from blog_cms.core.config import AuthConfig

    return AuthConfig(
        access_secret="test-access-secret-for-testing-only-0123456789",
        refresh_secret="test-refresh-secret-for-testing-only-0123456789",
        bcrypt_salt_rounds=4,
    )


@pytest.fixture
def redis_keys(auth_config):
    from blog_cms.core.redis_keys import RedisKeys

    return RedisKeys(auth_config)


@pytest.fixture
def kv_store(clock):
    from blog_cms.core.kv_store import InMemoryKeyValueStore

    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def user_directory():
    return InMemoryUserDirectory()


@pytest.fixture
def mock_mailer():
    """Mail dispatcher that records calls instead of sending."""
    mailer = AsyncMock()
    mailer.send_password_reset_email = AsyncMock(return_value=None)
    return mailer


@pytest.fixture
def auth_service(auth_config, kv_store, user_directory, mock_mailer):
    from blog_cms.services.auth_service import AuthService

    return AuthService(auth_config, kv_store, user_directory, mock_mailer)


@pytest_asyncio.fixture
async def registered_user(auth_service):
    """An ACTIVE customer: alice@example.com / STRONG_PASSWORD."""
    return await auth_service.register("Alice", "alice@example.com", STRONG_PASSWORD)


@pytest.fixture
def strong_password() -> str:
    return STRONG_PASSWORD


@pytest_asyncio.fixture
async def api_client(kv_store, user_directory, mock_mailer):
    """
    HTTP client bound to the FastAPI app with the key-value store, user
    directory and mailer replaced by the in-memory test doubles.
    """
    from httpx import ASGITransport, AsyncClient

    from blog_cms.api.deps import get_mailer, get_store, get_user_directory
    from blog_cms.main import app

    app.dependency_overrides[get_store] = lambda: kv_store
    app.dependency_overrides[get_user_directory] = lambda: user_directory
    app.dependency_overrides[get_mailer] = lambda: mock_mailer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


def reset_url_token(mock_mailer: AsyncMock) -> Optional[str]:
    """Reset token from the link passed to the most recent reset email."""
    if not mock_mailer.send_password_reset_email.await_args:
        return None
    reset_url = mock_mailer.send_password_reset_email.await_args.args[2]
    return reset_url.rsplit("/", 1)[-1]


@pytest.fixture
def sent_reset_token(mock_mailer):
    """Callable returning the token of the last reset email sent."""
    return lambda: reset_url_token(mock_mailer)
