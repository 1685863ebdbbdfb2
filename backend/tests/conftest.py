"""
Shared test fixtures for the AdOps backend test suite.

Tests run against a fresh in-memory SQLite database (``aiosqlite``) per test,
with PostgreSQL-only column types compiled to SQLite equivalents. Provider
APIs are never contacted: gateways are built on ``httpx.MockTransport``.
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

from cryptography.fernet import Fernet

# Settings are cached on first import, so the key must exist before ``app`` loads
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("CRON_SECRET_KEY", "test-cron-secret")
os.environ.setdefault("APP_DEBUG", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: F401, E402
from app.database import Base, get_db  # noqa: E402
from app.models.fb_ads import Ad, AdAccount, AdSet, Campaign  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.credential_store import CredentialStore, credential_cache  # noqa: E402
from app.services.meta_api import MetaGraphGateway  # noqa: E402
from app.utils.security import create_access_token  # noqa: E402


# ---------------------------------------------------------------------------
# Type-adaptation: teach SQLAlchemy to compile PG types for the SQLite dialect.
# ---------------------------------------------------------------------------

@compiles(PG_UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Session bound to an outer transaction that is rolled back after the test.
    ``commit()`` inside services only releases a SAVEPOINT.
    """
    async with engine.connect() as conn:
        transaction = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False, join_transaction_mode="create_savepoint")
        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Fresh credential cache per test and no Celery broker."""
    credential_cache.clear()
    dispatched: list[str] = []

    def _fake_dispatch(job_id):
        dispatched.append(str(job_id))
        return f"task-{job_id}"

    monkeypatch.setattr("app.services.metrics_sync.dispatch_sync_job", _fake_dispatch)
    yield dispatched
    credential_cache.clear()


@pytest.fixture()
def dispatched_jobs(_isolate_globals) -> list[str]:
    return _isolate_globals


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def test_user(db_session: AsyncSession) -> User:
    user = User(id=uuid.uuid4(), email="owner@example.com", full_name="Ad Owner", is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture()
async def other_user(db_session: AsyncSession) -> User:
    user = User(id=uuid.uuid4(), email="other@example.com", full_name="Someone Else", is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture()
async def meta_credential(db_session: AsyncSession, test_user: User):
    """A live credential for ``test_user`` with ad permissions."""
    store = CredentialStore(db_session)
    await store.put(
        test_user.id,
        "stored-token",
        datetime.now(timezone.utc) + timedelta(days=60),
        True,
        fb_user_id="fb-1",
        fb_user_name="Ad Owner",
    )
    await db_session.commit()
    return store


@pytest_asyncio.fixture()
async def ad_account(db_session: AsyncSession, test_user: User) -> AdAccount:
    account = AdAccount(
        id=uuid.uuid4(),
        user_id=test_user.id,
        account_id="act_1001",
        name="Main Account",
        currency="USD",
        timezone_name="UTC",
        account_status="ACTIVE",
    )
    db_session.add(account)
    await db_session.commit()
    return account


@pytest_asyncio.fixture()
async def hierarchy(db_session: AsyncSession, ad_account: AdAccount) -> dict:
    """One CBO campaign, one ABO campaign with an ad set, and an ad under it."""
    cbo = Campaign(
        id=uuid.uuid4(), ad_account_id=ad_account.id, campaign_id="c-cbo", name="CBO Campaign",
        objective="OUTCOME_TRAFFIC", status="ACTIVE", daily_budget=5000,
    )
    abo = Campaign(
        id=uuid.uuid4(), ad_account_id=ad_account.id, campaign_id="c-abo", name="ABO Campaign",
        objective="OUTCOME_TRAFFIC", status="ACTIVE",
    )
    db_session.add_all([cbo, abo])
    await db_session.flush()
    adset = AdSet(
        id=uuid.uuid4(), campaign_id=abo.id, adset_id="s-1", name="Ad Set One",
        status="ACTIVE", daily_budget=2000, optimization_goal="LINK_CLICKS", billing_event="IMPRESSIONS",
    )
    db_session.add(adset)
    await db_session.flush()
    ad = Ad(id=uuid.uuid4(), adset_id=adset.id, ad_id="a-1", name="Ad One", status="ACTIVE")
    db_session.add(ad)
    await db_session.commit()
    return {"cbo": cbo, "abo": abo, "adset": adset, "ad": ad}


# ---------------------------------------------------------------------------
# Provider mocks
# ---------------------------------------------------------------------------

def graph_gateway(handler, **kwargs) -> MetaGraphGateway:
    """A gateway whose HTTP calls are answered by ``handler(request)``."""
    kwargs.setdefault("backoff_base", 0)
    return MetaGraphGateway(transport=httpx.MockTransport(handler), **kwargs)


def graph_error(code: int, message: str = "error", status: int = 400, subcode: int | None = None) -> httpx.Response:
    error = {"message": message, "type": "OAuthException", "code": code, "fbtrace_id": "trace"}
    if subcode is not None:
        error["error_subcode"] = subcode
    return httpx.Response(status, json={"error": error})


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    FastAPI test client using ``ASGITransport``. ``get_db`` is overridden so
    every request shares the test session.
    """
    from app.main import app

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(test_user: User) -> dict[str, str]:
    token = create_access_token(str(test_user.id))
    return {"Authorization": f"Bearer {token}"}
