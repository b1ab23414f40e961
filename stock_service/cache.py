"""
Stock Service — キャッシュ層

Redis の薄いラッパー。TTL は固定で、呼び出し側は指定できない。
キャッシュは正ではない。DB と食い違ったら DB が勝つ。
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import DependencyFailure

DEFAULT_TTL_SECONDS = 120


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


class RedisCache:
    def __init__(self, redis: aioredis.Redis, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl = ttl

    async def get(self, key: str) -> str | None:
        """キーが無い・期限切れなら None (エラーではない)"""
        try:
            return await self.redis.get(key)
        except RedisError as exc:
            raise DependencyFailure(f"cache get {key} failed: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis.set(key, value, ex=self.ttl)
        except RedisError as exc:
            raise DependencyFailure(f"cache set {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as exc:
            raise DependencyFailure(f"cache delete {key} failed: {exc}") from exc
