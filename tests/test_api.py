"""HTTP surface tests: routes over ASGI, plus the app lifespan wiring."""

import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from stock_service.config import Settings
from stock_service.main import create_app
from stock_service.models import Product


@pytest.fixture()
def app(service):
    return create_app(Settings(request_timeout_seconds=5.0), service=service)


@pytest.fixture()
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestGetStockEndpoint:
    async def test_returns_stock(self, client, product):
        response = await client.get(f"/product/{product.id}/stock")
        assert response.status_code == 200
        assert response.json() == {"stock": 50}

    async def test_invalid_id(self, client):
        response = await client.get("/product/abc/stock")
        assert response.status_code == 400
        assert "detail" in response.json()

    async def test_unknown_product(self, client, cache):
        response = await client.get("/product/999/stock")
        assert response.status_code == 404
        assert response.json() == {"detail": "Product not found"}
        assert cache.entries == {}

    async def test_negative_stock(self, client, repository):
        broken = await repository.create(Product(name="Broken", stock=-1))
        response = await client.get(f"/product/{broken.id}/stock")
        assert response.status_code == 500

    async def test_backend_failure(self, client, cache, product):
        cache.broken = True
        response = await client.get(f"/product/{product.id}/stock")
        assert response.status_code == 500
        assert response.json() == {"detail": "Stock backend unavailable"}


class TestReserveEndpoint:
    async def test_reserve_then_insufficient(self, client, product):
        response = await client.post(
            "/product/reserve", json={"product_id": product.id, "quantity": 10}
        )
        assert response.status_code == 200
        assert response.json() == {"message": "Product stock reserved successfully"}

        response = await client.post(
            "/product/reserve", json={"product_id": product.id, "quantity": 45}
        )
        assert response.status_code == 400
        assert response.json() == {"detail": "Insufficient stock available"}

        response = await client.get(f"/product/{product.id}/stock")
        assert response.json() == {"stock": 40}

    @pytest.mark.parametrize("body", [
        {"product_id": 1},
        {"product_id": "one", "quantity": 1},
        {"product_id": 1, "quantity": 0},
        {"product_id": 1, "quantity": -5},
    ])
    async def test_malformed_body(self, client, product, body):
        response = await client.post("/product/reserve", json=body)
        assert response.status_code == 400

    async def test_unknown_product(self, client):
        response = await client.post("/product/reserve", json={"product_id": 999, "quantity": 1})
        assert response.status_code == 404

    async def test_with_order_id_is_idempotent(self, client, product):
        body = {"product_id": product.id, "quantity": 5, "order_id": "ord-1"}
        assert (await client.post("/product/reserve", json=body)).status_code == 200
        assert (await client.post("/product/reserve", json=body)).status_code == 200

        response = await client.get(f"/product/{product.id}/stock")
        assert response.json() == {"stock": 45}

    async def test_deadline_exceeded(self, client, service, product):
        async with service._locks.hold(product.id):
            response = await client.post(
                "/product/reserve",
                json={"product_id": product.id, "quantity": 1},
                headers={"X-Request-Timeout": "0.05"},
            )
        assert response.status_code == 504

        response = await client.get(f"/product/{product.id}/stock")
        assert response.json() == {"stock": 50}


class TestReleaseEndpoint:
    async def test_release(self, client, product):
        response = await client.post(
            "/product/release", json={"product_id": product.id, "quantity": 5}
        )
        assert response.status_code == 200
        assert response.json() == {"message": "Product stock released successfully"}

        response = await client.get(f"/product/{product.id}/stock")
        assert response.json() == {"stock": 55}

    async def test_release_for_order_without_reservation(self, client, product):
        response = await client.post(
            "/product/release",
            json={"product_id": product.id, "quantity": 5, "order_id": "ord-404"},
        )
        assert response.status_code == 400

    async def test_unknown_product(self, client):
        response = await client.post("/product/release", json={"product_id": 999, "quantity": 1})
        assert response.status_code == 404


async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "service": "stock-service"}


class StubRedis:
    """Stands in for the Redis client the lifespan builds: cache and stream."""

    def __init__(self, messages=()):
        self.values = {}
        self.pending = list(messages)
        self.groups = []
        self.acked = []
        self.closed = False

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value

    async def delete(self, key):
        self.values.pop(key, None)

    async def xgroup_create(self, stream, group, id="0", mkstream=False):
        self.groups.append((stream, group))

    async def xreadgroup(self, group, name, streams, count=None, block=None):
        if self.pending:
            batch, self.pending = self.pending, []
            return [(next(iter(streams)), batch)]
        await asyncio.sleep(0.01)
        return []

    async def xack(self, stream, group, *ids):
        self.acked.extend(ids)

    async def aclose(self):
        self.closed = True


def _lifespan_settings(tmp_path, **overrides):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'lifespan.db'}",
        consumer_workers=1,
        consumer_shutdown_seconds=5.0,
        **overrides,
    )


class TestLifespan:
    def test_wires_store_and_cache_without_consumer(self, tmp_path, monkeypatch):
        redis = StubRedis()
        monkeypatch.setattr("stock_service.main.aioredis.from_url", lambda url, **kw: redis)
        app = create_app(_lifespan_settings(tmp_path, consumer_enabled=False))

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            response = client.get("/product/1/stock")
            assert response.status_code == 404
            assert response.json() == {"detail": "Product not found"}

        assert redis.groups == []
        assert redis.closed is True

    def test_starts_and_drains_consumer(self, tmp_path, monkeypatch):
        payload = '{"id": 1, "product_requests": [{"product_id": 1, "quantity": 2}]}'
        redis = StubRedis([("1-0", {"key": "order.created", "value": payload})])
        monkeypatch.setattr("stock_service.main.aioredis.from_url", lambda url, **kw: redis)
        app = create_app(_lifespan_settings(tmp_path, consumer_enabled=True))

        with TestClient(app) as client:
            for _ in range(200):
                if redis.acked:
                    break
                time.sleep(0.01)
            assert client.get("/health").status_code == 200

        assert redis.groups == [("order_events", "stock-service")]
        assert redis.acked == ["1-0"]
        assert redis.closed is True
