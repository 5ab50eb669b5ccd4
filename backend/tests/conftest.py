"""
Pytest fixtures for backend testing.
Provides SQLite-backed business and audit stores, an installed audit capture,
seeded reference data and an API client with dependency overrides.
"""

import base64
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException, Request, status
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dietician_core.core.audit import AuditCapture, AuditedSession, set_audit_capture
from dietician_core.core.config import get_settings
from dietician_core.core.encryption import FieldCipher, get_field_cipher
from dietician_core.core.security.context import set_current_principal
from dietician_core.core.security.tokens import TokenPayload, verify_token
from dietician_core.db.models import Base, User
from dietician_core.db.seed import seed_reference_data
from dietician_core.db.session import (
    build_audit_session_factory,
    build_session_factory,
    get_audit_db_session,
    get_db_session,
)
from dietician_core.modules.identities.service import IdentityService

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
OTHER_ENCRYPTION_KEY = base64.b64encode(bytes(range(32, 64))).decode("ascii")
TEST_TOKEN_SECRET = "test-token-secret-with-enough-entropy"

ADMIN_EMAIL = "admin@example.com"
DIETICIAN_EMAIL = "dietician@example.com"
PATIENT_EMAIL = "patient@example.com"


def _sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


def make_principal(email: str | None, sub: str = "user-1") -> TokenPayload:
    now = datetime.now(UTC)
    return TokenPayload(
        sub=sub,
        email=email,
        roles=[],
        exp=now + timedelta(minutes=5),
        iat=now,
        raw_claims={},
    )


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Point settings at throwaway SQLite files and a fixed test key."""
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("TOKEN_SECRET", TEST_TOKEN_SECRET)
    monkeypatch.setenv("DATABASE_URL", _sqlite_url(tmp_path / "business.db"))
    monkeypatch.setenv("AUDIT_DATABASE_URL", _sqlite_url(tmp_path / "audit.db"))
    get_settings.cache_clear()
    get_field_cipher.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
    get_field_cipher.cache_clear()


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def other_cipher() -> FieldCipher:
    """Cipher with a different key, for wrong-key scenarios."""
    return FieldCipher(OTHER_ENCRYPTION_KEY)


async def _create_engine(path: Path) -> AsyncEngine:
    # concurrent audit writers wait on the SQLite file lock instead of failing
    engine = create_async_engine(_sqlite_url(path), echo=False, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest_asyncio.fixture
async def business_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = await _create_engine(tmp_path / "business.db")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def audit_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = await _create_engine(tmp_path / "audit.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(business_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(business_engine)


@pytest.fixture
def audit_session_factory(audit_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_audit_session_factory(audit_engine)


@pytest_asyncio.fixture
async def audit_capture(
    audit_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AuditCapture, None]:
    """Audit capture installed on the business session class for one test."""
    capture = AuditCapture(audit_session_factory)
    capture.install(AuditedSession)
    set_audit_capture(capture)
    yield capture
    await capture.drain()
    capture.uninstall()
    set_audit_capture(None)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
    audit_capture: AuditCapture,
) -> AsyncGenerator[AsyncSession, None]:
    """Business session with seeded roles, actions and grants."""
    async with session_factory() as session:
        await seed_reference_data(session)
        await session.commit()
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def users(db_session: AsyncSession, cipher: FieldCipher) -> dict[str, User]:
    """One active identity per default role."""
    service = IdentityService(db_session, cipher)
    created = {
        "ADMIN": await service.register(ADMIN_EMAIL, "ADMIN", full_name="Ada Admin"),
        "DIETICIAN": await service.register(
            DIETICIAN_EMAIL, "DIETICIAN", full_name="Dana Dietician"
        ),
        "PATIENT": await service.register(PATIENT_EMAIL, "PATIENT", full_name="Pat Patient"),
    }
    await db_session.commit()
    return created


@pytest.fixture
def principal_factory() -> Callable[..., TokenPayload]:
    return make_principal


@pytest.fixture
def principals() -> dict[str, TokenPayload]:
    return {
        "ADMIN": make_principal(ADMIN_EMAIL, sub="admin-sub"),
        "DIETICIAN": make_principal(DIETICIAN_EMAIL, sub="dietician-sub"),
        "PATIENT": make_principal(PATIENT_EMAIL, sub="patient-sub"),
    }


@pytest.fixture
def api_app(
    session_factory: async_sessionmaker[AsyncSession],
    audit_session_factory: async_sessionmaker[AsyncSession],
    audit_capture: AuditCapture,
    cipher: FieldCipher,
    principals: dict[str, TokenPayload],
) -> FastAPI:
    """
    Application wired to the test stores.

    Tokens are not verified; the ``Authorization`` header only selects which
    principal the overridden ``verify_token`` returns.
    """
    from dietician_core.main import create_application

    app = create_application()

    async def override_verify_token(request: Request) -> TokenPayload:
        auth_header = request.headers.get("Authorization", "")
        role = auth_header.removeprefix("Bearer ").strip()
        if role not in principals:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
            )
        principal = principals[role]
        set_current_principal(principal.sub)
        return principal

    async def override_get_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_audit_db_session():
        async with audit_session_factory() as session:
            yield session

    app.dependency_overrides[verify_token] = override_verify_token
    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_audit_db_session] = override_get_audit_db_session
    app.dependency_overrides[get_field_cipher] = lambda: cipher
    return app


@pytest_asyncio.fixture
async def api_client_factory(
    api_app: FastAPI,
) -> AsyncGenerator[Callable[[str | None], AsyncClient], None]:
    """Build API clients authenticated as one of the default roles (or none)."""
    clients: list[AsyncClient] = []

    def _factory(role: str | None) -> AsyncClient:
        headers = {"Authorization": f"Bearer {role}"} if role else {}
        client = AsyncClient(
            transport=ASGITransport(app=api_app),
            base_url="http://test",
            headers=headers,
        )
        clients.append(client)
        return client

    yield _factory

    for client in clients:
        await client.aclose()
