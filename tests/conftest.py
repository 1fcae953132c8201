import itertools
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# Add backend root to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("JWT_SECRET", "test-secret-for-the-tanka-chaya-suite-0123456789")

from main import server
from database import get_session
from event_manager import event_manager
from models import EventType, User
from security import create_access_token, get_password_hash
import socket_manager
from time_utils import utcnow

# Use SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DATABASE_URL, echo=False, future=True, poolclass=StaticPool)

# Hashing once keeps user creation cheap
TEST_PASSWORD = "password123"
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


@pytest_asyncio.fixture(loop_scope="session", autouse=True)
async def setup_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest_asyncio.fixture(loop_scope="session")
async def session():
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(loop_scope="session")
async def client(session):
    async def get_session_override():
        yield session

    server.dependency_overrides[get_session] = get_session_override

    async with AsyncClient(transport=ASGITransport(app=server), base_url="http://test") as c:
        yield c

    server.dependency_overrides.clear()


@pytest.fixture
def session_factory(session):
    """Stand-in for async_session_maker that hands out the test session."""
    @asynccontextmanager
    async def factory():
        yield session
    return factory


@pytest.fixture(autouse=True)
def emitted(monkeypatch):
    """Capture every Socket.IO emit instead of sending it."""
    emit = AsyncMock()
    monkeypatch.setattr(socket_manager.sio, "emit", emit)
    return emit


@pytest.fixture
def make_user(session):
    counter = itertools.count(1)

    async def _make(display_name=None, is_admin=False):
        n = next(counter)
        user = User(
            email=f"user{n}@example.com",
            password_hash=TEST_PASSWORD_HASH,
            display_name=display_name or f"User {n}",
            is_admin=is_admin,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _headers


@pytest.fixture
def make_event(session):
    async def _make(max_rounds=2, start=None, end=None, event_type=EventType.NIGHT):
        start = start or utcnow() + timedelta(hours=1)
        end = end or start + timedelta(minutes=90)
        themes = [f"お題{i}" for i in range(1, max_rounds + 1)]
        return await event_manager.create_event(session, event_type, max_rounds, start, end, themes)

    return _make

