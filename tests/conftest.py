"""Shared pytest fixtures for rank tracker tests."""
import os

# Settings are read at import time; provide the required values before any
# rank_tracker module is imported.
os.environ.setdefault("JWT_SECRET", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import fakeredis.aioredis
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from rank_tracker.core.database import Base
from rank_tracker.models import Domain, Keyword, QuotaRecord, ServiceIntegration
from rank_tracker.providers.models import RankLookupResult
from rank_tracker.utils.time import reference_today


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
async def engine(tmp_path):
    """
    File-backed SQLite engine.

    NullPool gives every session its own connection so concurrent sessions
    really contend on the database like separate workers do.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rank_tracker_test.db'}",
        poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


@pytest.fixture
async def db(session_factory):
    """A single session for arranging and asserting."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def fake_redis():
    """Create a FakeRedis instance for testing."""
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def today() -> date:
    return reference_today("UTC")


# ============================================================================
# Seeding
# ============================================================================

class Seeder:
    """Creates rows for tests through its own sessions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _save(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
        return obj

    async def quota(
        self,
        tenant_id: str,
        limit: int,
        used: int = 0,
        reset_date: Optional[date] = None
    ) -> QuotaRecord:
        return await self._save(QuotaRecord(
            tenant_id=tenant_id,
            daily_quota_limit=limit,
            daily_quota_used=used,
            quota_reset_date=reset_date or reference_today("UTC")
        ))

    async def integration(
        self,
        daily_limit: int = -1,
        daily_used: int = 0,
        minute_limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
        is_active: bool = True,
        reset_date: Optional[date] = None,
        created_at: Optional[datetime] = None,
        api_key: str = "fc-test-key",
        service_name: str = "firecrawl"
    ) -> ServiceIntegration:
        return await self._save(ServiceIntegration(
            service_name=service_name,
            tenant_id=tenant_id,
            api_key=api_key,
            api_url="https://firecrawl.test",
            daily_limit=daily_limit,
            daily_used=daily_used,
            minute_limit=minute_limit,
            is_active=is_active,
            quota_reset_date=reset_date or reference_today("UTC"),
            created_at=created_at or datetime.now(timezone.utc)
        ))

    async def domain(self, tenant_id: str, domain_name: str = "example.com") -> Domain:
        return await self._save(Domain(tenant_id=tenant_id, domain_name=domain_name))

    async def keyword(
        self,
        domain: Domain,
        term: str = "best running shoes",
        is_active: bool = True,
        last_checked_at: Optional[datetime] = None,
        current_position: Optional[int] = None,
        country_code: str = "US",
        device_type: str = "desktop"
    ) -> Keyword:
        return await self._save(Keyword(
            tenant_id=domain.tenant_id,
            domain_id=domain.id,
            keyword=term,
            is_active=is_active,
            last_checked_at=last_checked_at,
            current_position=current_position,
            country_code=country_code,
            device_type=device_type
        ))

    async def keywords(self, domain: Domain, count: int, **kwargs):
        return [await self.keyword(domain, term=f"keyword {i}", **kwargs) for i in range(count)]


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


def lookup_result(position: Optional[int] = 3, url: Optional[str] = "https://example.com/page") -> RankLookupResult:
    """Build a provider result for the given position."""
    return RankLookupResult(
        position=position,
        url=url if position is not None else None,
        total_results=100,
        provider="firecrawl"
    )


@pytest.fixture
def make_lookup_result():
    return lookup_result


def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


@pytest.fixture
def ago():
    return hours_ago
