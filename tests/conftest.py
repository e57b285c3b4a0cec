"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from models import Base
from typing import AsyncGenerator, Dict, List


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite so several sessions see the same data"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


def make_items(prefix: str, count: int, start: int = 0) -> List[Dict]:
    """Upstream items in the legacy API shape"""
    return [
        {
            "bizesId": f"{prefix}{n:05d}",
            "bizesNm": f"상점 {prefix}{n}",
            "rdnmAdr": "서울특별시 중구 을지로동 123",
            "indsSclsNm": "커피전문점",
            "lat": 37.566,
            "lon": 126.991,
        }
        for n in range(start, start + count)
    ]


class FakePublicDataClient:
    """
    Serves pages from memory and records every call.

    pages maps a partition (or "date") to its list of pages; a page is a
    list of items or an exception to raise.
    """

    def __init__(self, pages: Dict[str, list]):
        self.pages = pages
        self.calls = []

    def _serve(self, unit: str, page: int):
        self.calls.append((unit, page))
        pages = self.pages.get(unit, [])
        if page > len(pages):
            return []
        result = pages[page - 1]
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_by_partition(self, partition: str, page: int):
        return self._serve(partition, page)

    async def fetch_by_date(self, since, page: int):
        return self._serve("date", page)

    async def close(self):
        pass


@pytest.fixture
def items_factory():
    return make_items


@pytest.fixture
def fake_public_data():
    return FakePublicDataClient
