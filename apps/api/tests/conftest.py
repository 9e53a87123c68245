from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services.session_token import SESSION_TOKEN_TYPE


def issue_session_token(account_id, *, email=None, expires_in=timedelta(hours=1), token_type=SESSION_TOKEN_TYPE):
    """Sign a session token the way the upstream identity service does."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": account_id,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def bearer_headers(account_id, **kwargs):
    return {"Authorization": f"Bearer {issue_session_token(account_id, **kwargs)}"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Per-test SQLite file database; one maker so concurrent tests can open many sessions."""
    db_path = tmp_path / "credit_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def unreachable_session_maker(tmp_path):
    """Sessions whose database file cannot be opened, so every statement fails in the driver."""
    db_path = tmp_path / "missing-volume" / "credit_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


async def _client_for(maker):
    async def override_get_db():
        async with maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def api_client(session_maker):
    async with await _client_for(session_maker) as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def unreachable_api_client(unreachable_session_maker):
    async with await _client_for(unreachable_session_maker) as client:
        yield client
    app.dependency_overrides.pop(get_db, None)
