"""Shared fixtures: an in-memory database, seeded users and an API client."""

import hashlib

import httpx
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from community.app.db import models
from community.app.db.async_session import get_db, get_session_factory
from community.app.db.base import Base
from community.app.main import app
from community.app.middleware.rate_limit import chat_rate_limiter

ALICE_KEY = "sk-test-alice"
BOB_KEY = "sk-test-bob"


def auth(key: str = ALICE_KEY) -> dict:
    return {"Authorization": f"Bearer {key}"}


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def users(session_factory):
    alice = models.User(
        id="user-alice",
        name="Alice",
        email="alice@example.com",
        api_key_hash=hashlib.sha256(ALICE_KEY.encode()).hexdigest(),
    )
    bob = models.User(
        id="user-bob",
        name="Bob",
        email="bob@example.com",
        api_key_hash=hashlib.sha256(BOB_KEY.encode()).hexdigest(),
    )
    async with session_factory() as session:
        session.add_all([alice, bob])
        await session.commit()
    return alice, bob


@pytest_asyncio.fixture
async def client(session_factory, users):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    chat_rate_limiter.clear()
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http
    finally:
        app.dependency_overrides.clear()
        chat_rate_limiter.clear()
