"""Common test fixtures and configurations."""

import os

# Settings read the environment at import time
os.environ["PYTEST_RUNNING"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-api-key-0123456789abcdef")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("FACEPP_API_KEY", "facepp-key")
os.environ.setdefault("FACEPP_API_SECRET", "facepp-secret")

import logging
from typing import AsyncGenerator, Dict

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers every table on Base.metadata
from app.core.base_model import Base
from app.core.config import settings
from app.core.database import get_db
from app.main import app as app_instance
from app.services.credit import CreditService
from app.services.face_swap_service import FaceSwapClient, ResultStorage, get_face_swap_client, get_result_storage
from app.services.stripe_async import get_payment_gateway
from tests.helpers import FakeGateway, make_auth_header

logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

SQLALCHEMY_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture()
async def engine():
    """One in-memory database per test; StaticPool keeps every session on the same connection."""
    test_engine = create_async_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture()
async def db(engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest.fixture()
def credit_service(db: AsyncSession) -> CreditService:
    return CreditService(db)


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def face_swap_client() -> FaceSwapClient:
    """Client whose HTTP calls are answered by ``face_swap_client.handler``."""
    client = FaceSwapClient(api_key="facepp-key", api_secret="facepp-secret",
                            url="https://facepp.test/mergeface", retry_delay=0)

    def default_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": "aGVsbG8="})

    client.handler = default_handler
    client._http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: client.handler(r)))
    return client


@pytest.fixture()
def result_storage(tmp_path) -> ResultStorage:
    return ResultStorage(base_dir=str(tmp_path))


@pytest.fixture()
async def client(db: AsyncSession, fake_gateway, face_swap_client, result_storage) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the session, payment gateway and face swap client overridden."""

    async def override_get_db():
        yield db

    app_instance.dependency_overrides[get_db] = override_get_db
    app_instance.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app_instance.dependency_overrides[get_face_swap_client] = lambda: face_swap_client
    app_instance.dependency_overrides[get_result_storage] = lambda: result_storage
    async with AsyncClient(transport=ASGITransport(app=app_instance), base_url="http://test") as test_client:
        yield test_client
    app_instance.dependency_overrides.clear()


@pytest.fixture()
def user_id() -> str:
    return "0b1c7a3e-5f0d-4c1e-9a57-3d2f8e1b6c90"


@pytest.fixture()
def auth_headers(user_id) -> Dict[str, str]:
    return make_auth_header(user_id, email="user@example.com")


@pytest.fixture()
def internal_headers() -> Dict[str, str]:
    return {"X-API-Key": settings.INTERNAL_API_KEY}
