import time
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from stock_service.errors import DependencyFailure
from stock_service.models import Product
from stock_service.repository import ProductRepository
from stock_service.schema import init_schema
from stock_service.service import ReservationService


class MemoryCache:
    """Test double with the same interface as RedisCache."""

    def __init__(self, ttl: int = 120) -> None:
        self.ttl = ttl
        self.entries: dict[str, tuple[str, float]] = {}
        self.broken = False

    def _check(self) -> None:
        if self.broken:
            raise DependencyFailure("cache unavailable")

    async def get(self, key):
        self._check()
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self.entries[key]
            return None
        return value

    async def set(self, key, value):
        self._check()
        self.entries[key] = (value, time.monotonic() + self.ttl)

    async def delete(self, key):
        self._check()
        self.entries.pop(key, None)


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stock.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
def cache():
    return MemoryCache()


@pytest.fixture()
def repository(session_factory, cache):
    return ProductRepository(session_factory, cache)


@pytest.fixture()
def service(repository):
    return ReservationService(repository)


@pytest.fixture()
async def product(repository):
    """Product A with 50 units in stock."""
    return await repository.create(
        Product(
            name="Product A",
            description="Description of Product A",
            price=Decimal("100.00"),
            stock=50,
        )
    )
