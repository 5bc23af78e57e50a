# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

from __future__ import annotations

import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic settings for import-time initialization, regardless of shell env.
os.environ["AUTH_MODE"] = "local"
os.environ["ENVIRONMENT"] = "dev"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_AUTO_MIGRATE"] = "false"
os.environ["EMAIL_APPROVAL_SECRET"] = "test-email-approval-secret-0123456789-abcdef"
os.environ["EMAIL_API_KEY"] = "test-email-api-key"
os.environ["BASE_URL"] = "http://portal.test"
os.environ["RQ_DISPATCH_THROTTLE_SECONDS"] = "0"

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402

from portal import models as _models  # noqa: E402,F401


class FakeRedis:
    """In-memory stand-in for the list + sorted-set calls the queue makes."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    def lpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    def rpop(self, key: str) -> str | None:
        items = self.lists.get(key) or []
        if not items:
            return None
        return items.pop()

    def brpop(self, keys: list[str], timeout: float = 0) -> tuple[str, str] | None:
        del timeout
        for key in keys:
            value = self.rpop(key)
            if value is not None:
                return key, value
        return None

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrangebyscore(
        self,
        key: str,
        low: Any,
        high: Any,
        *,
        start: int = 0,
        num: int | None = None,
        withscores: bool = False,
    ) -> list[Any]:
        lo = float("-inf") if low == "-inf" else float(low)
        hi = float("inf") if high == "+inf" else float(high)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if lo <= score <= hi
        )
        window = members[start:] if num is None else members[start : start + num]
        if withscores:
            return [(member, score) for score, member in window]
        return [member for _, member in window]

    def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()

    def _fake_client(redis_url: str | None = None) -> FakeRedis:
        del redis_url
        return fake

    monkeypatch.setattr("portal.services.queue._redis_client", _fake_client)
    return fake


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_maker() as session:
        yield session


class Seeded:
    """Organization with one user per role, used by workflow tests."""

    def __init__(self, **rows: Any) -> None:
        self.__dict__.update(rows)


async def seed_org(session: AsyncSession, *, approval_threshold: float | None = None) -> Seeded:
    from portal.core.user_tokens import hash_user_token
    from portal.models.organization_members import OrganizationMember
    from portal.models.organizations import Organization
    from portal.models.users import User

    organization = Organization(
        name="Acme Stores",
        slug="acme",
        approval_threshold=approval_threshold,
    )
    session.add(organization)
    await session.flush()
    rows: dict[str, Any] = {"organization": organization, "tokens": {}}
    for role in ("member", "manager", "admin"):
        token = f"{role}-token"
        user = User(
            email=f"{role}@acme.test",
            name=role.title(),
            api_token_hash=hash_user_token(token),
        )
        session.add(user)
        await session.flush()
        member = OrganizationMember(
            organization_id=organization.id,
            user_id=user.id,
            role=role,
        )
        session.add(member)
        rows[role] = user
        rows[f"{role}_member"] = member
        rows["tokens"][role] = token
    await session.commit()
    return Seeded(**rows)


@pytest.fixture
async def org(session: AsyncSession) -> Seeded:
    return await seed_org(session)


def build_api_app(
    session_maker: async_sessionmaker[AsyncSession],
    *routers: Any,
) -> Any:
    """FastAPI app mounting `routers` under /api/v1 against the test database."""
    from fastapi import APIRouter, FastAPI
    from fastapi_pagination import add_pagination

    from portal.core.error_handling import install_error_handling
    from portal.db.session import get_session

    app = FastAPI()
    install_error_handling(app)
    api_v1 = APIRouter(prefix="/api/v1")
    for router in routers:
        api_v1.include_router(router)
    app.include_router(api_v1)
    add_pagination(app)

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    return app


def auth_headers(org: Seeded, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {org.tokens[role]}"}
