"""
Stock Service — 注文イベントのコンシューマ

order_events ストリーム (Redis Streams) を購読し、注文のライフサイクルに
合わせて在庫を動かす:
  order.created   → 明細ごとに reserve
  order.cancelled → 明細ごとに release
  それ以外        → 無視

┌──────────────┐  order_events   ┌─────────────────────┐
│ Order Service │ ── Redis ─────▶ │ Stock Service       │
│              │   Streams       │  lane 0..N-1        │
└──────────────┘                  │  (注文 ID で振り分け) │
                                  └─────────┬───────────┘
                                            ▼
                                  ReservationService

Pub/Sub と違い、Streams はコンシューマグループで配信位置を持つので
サービス停止中のイベントも失われない (at-least-once)。
重複配信は引き当て台帳で吸収する。

解釈できないメッセージは捨てる (リトライしない)。
明細ごとの失敗はログに残して次の明細へ進む。ロールバックはしない。
"""

import asyncio
import logging
import zlib

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, ResponseError

from .errors import InventoryError
from .models import Order
from .service import ReservationService

logger = logging.getLogger(__name__)

CREATED = "created"
CANCELLED = "cancelled"


class OrderEventConsumer:
    def __init__(self, service: ReservationService) -> None:
        self.service = service

    def parse(self, key: str, value: str | bytes) -> tuple[str, Order] | None:
        """キーは "<namespace>.<event-type>"。解釈できなければ None"""
        parts = key.split(".")
        if len(parts) < 2 or not parts[1]:
            logger.error("Dropping message with malformed key %r", key)
            return None
        try:
            order = Order.model_validate_json(value)
        except ValidationError:
            logger.exception("Dropping message %r with malformed order payload", key)
            return None
        return parts[1], order

    async def dispatch(self, event_type: str, order: Order) -> None:
        if event_type == CREATED:
            action, verb = self.service.reserve, "reserve"
        elif event_type == CANCELLED:
            action, verb = self.service.release, "release"
        else:
            logger.warning("Ignoring unknown event type %r for order %s", event_type, order.id)
            return

        for product_id, quantity in order.quantities_by_product().items():
            try:
                ok = await action(product_id, quantity, order_id=order.id)
            except InventoryError as exc:
                logger.error(
                    "Failed to %s %d of product %s for order %s: %s",
                    verb, quantity, product_id, order.id, exc,
                )
                continue
            if ok:
                logger.info(
                    "Order %s: %s %d of product %s", order.id, verb, quantity, product_id
                )
            else:
                logger.warning(
                    "Order %s: could not %s %d of product %s",
                    order.id, verb, quantity, product_id,
                )

    async def handle(self, key: str, value: str | bytes) -> None:
        parsed = self.parse(key, value)
        if parsed is None:
            return
        await self.dispatch(*parsed)


def lane_for(order_id: int | str, lanes: int) -> int:
    """同じ注文は必ず同じレーンに流す (created → cancelled の順序を保つ)"""
    return zlib.crc32(str(order_id).encode()) % lanes


async def run_consumer(
    redis: aioredis.Redis,
    consumer: OrderEventConsumer,
    *,
    stream: str,
    group: str,
    name: str,
    workers: int,
    shutdown_event: asyncio.Event,
    block_ms: int = 1000,
    batch: int = 32,
    retry_delay: float = 1.0,
) -> None:
    """
    コンシューマグループで stream を読み、レーンに振り分けて処理する。
    shutdown_event がセットされるまで無限ループで待機する。

    レーン内は逐次、レーン間は並行。キューに上限があるので、
    遅いレーンは読み取りループ全体を減速させる (バックプレッシャー)。
    読み取りに失敗したら retry_delay 秒待って読み直す。
    """
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise
    logger.info("Consuming %s as %s/%s with %d lanes", stream, group, name, workers)

    queues: list[asyncio.Queue] = [asyncio.Queue(maxsize=batch) for _ in range(workers)]

    async def ack(message_id: str) -> None:
        # ack に失敗したメッセージは pending に残る。ループは止めない
        try:
            await redis.xack(stream, group, message_id)
        except RedisError as exc:
            logger.error("Failed to ack order event %s: %s", message_id, exc)

    async def lane(queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            if item is None:
                return
            message_id, event_type, order = item
            try:
                await consumer.dispatch(event_type, order)
            except Exception:
                logger.exception("Failed to process order event %s", message_id)
            await ack(message_id)

    lanes = [asyncio.create_task(lane(q)) for q in queues]
    try:
        while not shutdown_event.is_set():
            try:
                response = await redis.xreadgroup(
                    group, name, {stream: ">"}, count=batch, block=block_ms
                )
            except RedisError as exc:
                logger.error("Failed to read from %s, retrying in %.1fs: %s", stream, retry_delay, exc)
                await asyncio.sleep(retry_delay)
                continue
            if not response:
                continue
            for _stream, messages in response:
                for message_id, fields in messages:
                    parsed = consumer.parse(fields.get("key", ""), fields.get("value", ""))
                    if parsed is None:
                        await ack(message_id)
                        continue
                    event_type, order = parsed
                    queue = queues[lane_for(order.id, workers)]
                    await queue.put((message_id, event_type, order))
    finally:
        for queue in queues:
            await queue.put(None)
        await asyncio.gather(*lanes, return_exceptions=True)
        logger.info("Stopped consuming %s", stream)
