"""
Stock Service — 引き当てエンジン (Reservation Engine)

在庫は負にならない、という業務ルールを守る層。
reserve はガード付きの減算、release はガード無しの加算。

同じ商品への read-modify-write が競合しないように 2 段で守る:
  1. プロセス内: 商品 ID ごとの asyncio.Lock (KeyedLock)
  2. プロセス間: DB への書き込みを version で検査 (楽観的ロック)
     競合したらキャッシュを捨てて DB から読み直し、やり直す。

order_id を渡すと引き当て台帳 (stock_reservations) を使う:
  - 同じ注文・商品の reserve は 1 回しか効かない (重複配信対策)
  - release は台帳に reserved として残っている数量だけを戻す
order_id 無しの release は上限なしで在庫を増やす (運用者向けの直接操作)。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .errors import (
    ConcurrentModificationError,
    InvalidQuantity,
    ProductNotFound,
    StaleProductError,
    StockInvariantViolation,
)
from .locks import KeyedLock
from .models import Product, Reservation, ReservationStatus
from .repository import ProductRepository

logger = logging.getLogger(__name__)


class ReservationService:
    def __init__(self, products: ProductRepository, *, max_retries: int = 3) -> None:
        self.products = products
        self.max_retries = max_retries
        self._locks = KeyedLock()

    async def get_stock(self, product_id: int) -> int:
        product = await self.products.get_by_id(product_id)
        if product is None:
            logger.warning("Product %s not found", product_id)
            raise ProductNotFound(product_id)
        if product.stock < 0:
            logger.error("Product %s has negative stock %d", product_id, product.stock)
            raise StockInvariantViolation(product_id, product.stock)
        return product.stock

    async def reserve(
        self,
        product_id: int,
        quantity: int,
        *,
        order_id: int | str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """
        在庫引き当て

        在庫不足なら False を返し、在庫には触らない (エラーではない)。
        """
        _check_quantity(quantity)
        order_key = None if order_id is None else str(order_id)

        async def attempt(fresh: bool) -> bool:
            return await self._reserve_once(product_id, quantity, order_key, fresh)

        return await self._serialized(product_id, attempt, timeout)

    async def release(
        self,
        product_id: int,
        quantity: int,
        *,
        order_id: int | str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """
        在庫解放

        order_id 付きで、台帳に reserved が無ければ False (何も変えない)。
        """
        _check_quantity(quantity)
        order_key = None if order_id is None else str(order_id)

        async def attempt(fresh: bool) -> bool:
            return await self._release_once(product_id, quantity, order_key, fresh)

        return await self._serialized(product_id, attempt, timeout)

    # ── internals ────────────────────────────────

    async def _serialized(
        self,
        product_id: int,
        attempt: Callable[[bool], Awaitable[bool]],
        timeout: float | None,
    ) -> bool:
        attempts = self.max_retries + 1
        async with asyncio.timeout(timeout):
            async with self._locks.hold(product_id):
                for n in range(attempts):
                    try:
                        # 2 回目以降はキャッシュを信用しない
                        return await attempt(n > 0)
                    except StaleProductError:
                        logger.info(
                            "Write conflict on product %s (attempt %d/%d)",
                            product_id, n + 1, attempts,
                        )
                        await self.products.invalidate(product_id)

        logger.error("Giving up on product %s after %d conflicting writes", product_id, attempts)
        raise ConcurrentModificationError(product_id, attempts)

    async def _load(self, product_id: int, fresh: bool) -> Product:
        product = await self.products.get_by_id(product_id, use_cache=not fresh)
        if product is None:
            logger.warning("Product %s not found", product_id)
            raise ProductNotFound(product_id)
        return product

    async def _reserve_once(
        self, product_id: int, quantity: int, order_id: str | None, fresh: bool
    ) -> bool:
        if order_id is not None:
            existing = await self.products.get_reservation(order_id, product_id)
            if existing is not None:
                logger.info(
                    "Order %s already %s on product %s; skipping",
                    order_id, existing.status.value, product_id,
                )
                return existing.status is ReservationStatus.RESERVED

        product = await self._load(product_id, fresh)
        if quantity > product.stock:
            logger.warning(
                "Insufficient stock for product %s: requested=%d, available=%d",
                product_id, quantity, product.stock,
            )
            if order_id is not None:
                await self.products.record_reservation(
                    Reservation(
                        order_id=order_id,
                        product_id=product_id,
                        quantity=quantity,
                        status=ReservationStatus.DECLINED,
                    )
                )
            return False

        entry = None
        if order_id is not None:
            entry = Reservation(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                status=ReservationStatus.RESERVED,
            )
        updated = await self.products.update(
            product.model_copy(update={"stock": product.stock - quantity}),
            reservation=entry,
        )
        logger.info(
            "Reserved %d of product %s (stock %d -> %d)",
            quantity, product_id, product.stock, updated.stock,
        )
        return True

    async def _release_once(
        self, product_id: int, quantity: int, order_id: str | None, fresh: bool
    ) -> bool:
        entry = None
        if order_id is not None:
            existing = await self.products.get_reservation(order_id, product_id)
            if existing is None or existing.status is not ReservationStatus.RESERVED:
                logger.warning(
                    "Order %s holds no stock of product %s; release skipped",
                    order_id, product_id,
                )
                return False
            if existing.quantity != quantity:
                logger.warning(
                    "Order %s releases %d of product %s but reserved %d; using reserved",
                    order_id, quantity, product_id, existing.quantity,
                )
            quantity = existing.quantity
            entry = existing.model_copy(update={"status": ReservationStatus.RELEASED})

        product = await self._load(product_id, fresh)
        updated = await self.products.update(
            product.model_copy(update={"stock": product.stock + quantity}),
            reservation=entry,
        )
        logger.info(
            "Released %d of product %s (stock %d -> %d)",
            quantity, product_id, product.stock, updated.stock,
        )
        return True


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantity(quantity)
