"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone

import jwt
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient


def _generate_test_keys() -> str:
    """Generate an RSA key pair, point settings at the public half, return the private PEM."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    tmpdir = tempfile.mkdtemp(prefix="irac_test_keys_")
    public_path = os.path.join(tmpdir, "jwt_public.pem")
    with open(public_path, "w") as f:
        f.write(public_pem)

    os.environ["IRAC_JWT_PUBLIC_KEY_PATH"] = public_path
    return private_pem


# Must run before irac.main builds its module-level app
_PRIVATE_KEY_PEM = _generate_test_keys()
os.environ.setdefault("IRAC_LOG_FORMAT", "console")

from irac.auth.api_keys import hash_api_key  # noqa: E402
from irac.auth.jwt import reset_keys  # noqa: E402
from irac.config import get_settings  # noqa: E402
from irac.dependencies import get_redis_dep, get_storage  # noqa: E402
from irac.main import create_app  # noqa: E402
from irac.scoring.engine import ScoringEngine  # noqa: E402
from irac.scoring.memory_repository import MemoryScoringStorage  # noqa: E402

SERVICE_API_KEY = "sk-irac-test-service-key"


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings and the JWT key are cached process-wide; reset around every test."""
    get_settings.cache_clear()
    reset_keys()
    yield
    get_settings.cache_clear()
    reset_keys()


@pytest.fixture
def storage() -> MemoryScoringStorage:
    return MemoryScoringStorage()


@pytest.fixture
def engine(storage: MemoryScoringStorage) -> ScoringEngine:
    return ScoringEngine(storage)


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Sign an access token the way the platform auth service does."""

    def _make(user_id: str, role: str | None = None, expires_in: int = 3600) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
            "iss": "irac.ir",
        }
        if role is not None:
            payload["role"] = role
        return jwt.encode(payload, _PRIVATE_KEY_PEM, algorithm="RS256")

    return _make


@pytest.fixture
def service_key(monkeypatch) -> str:
    """Configure one service API key and return its plaintext."""
    monkeypatch.setenv("IRAC_SERVICE_API_KEY_HASHES", json.dumps([hash_api_key(SERVICE_API_KEY)]))
    get_settings.cache_clear()
    return SERVICE_API_KEY


@pytest.fixture
def app(storage: MemoryScoringStorage) -> FastAPI:
    """App wired to in-memory storage and no Redis."""
    application = create_app()
    application.dependency_overrides[get_storage] = lambda: storage
    application.dependency_overrides[get_redis_dep] = lambda: None
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(make_token) -> Callable[..., dict[str, str]]:
    def _headers(user_id: str, role: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _headers
