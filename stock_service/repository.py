"""
Stock Service — 商品リポジトリ (Stock Store)

読み取り: cache-aside。キャッシュ → 無ければ DB → 見つかればキャッシュに載せる。
書き込み: write-through。DB を先にコミットし、その後キャッシュを書く。

DB とキャッシュの書き込みはアトミックではない。間で落ちた場合、
キャッシュは TTL が切れるまで古い値を持つ (許容する陳腐化の幅)。
古いキャッシュを元にした更新は version 不一致で弾かれるので、
在庫数そのものが壊れることはない。
"""

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .cache import RedisCache, product_key
from .errors import DependencyFailure, StaleProductError
from .models import Product, Reservation, ReservationStatus
from .schema import products, stock_reservations

logger = logging.getLogger(__name__)


class ProductRepository:
    def __init__(self, session_factory: sessionmaker, cache: RedisCache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    # ── Read ─────────────────────────────────────

    async def get_by_id(self, product_id: int, *, use_cache: bool = True) -> Product | None:
        """
        商品を取得する。存在しなければ None (エラーではない)。

        use_cache=False は DB を直接読む (競合後のリトライ用)。
        その場合も読んだ値でキャッシュを上書きする。
        """
        key = product_key(product_id)
        if use_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                try:
                    return Product.model_validate_json(cached)
                except ValidationError:
                    # 壊れた・古い形式のスナップショットは捨てて DB から読み直す
                    logger.warning("Discarding unreadable cache entry %s", key)
                    await self.cache.delete(key)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(products).where(products.c.id == product_id)
                )
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"store read of product {product_id} failed: {exc}") from exc

        if row is None:
            return None

        product = Product.model_validate(dict(row))
        await self.cache.set(key, product.model_dump_json())
        return product

    async def get_reservation(self, order_id: str, product_id: int) -> Reservation | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(stock_reservations).where(
                        stock_reservations.c.order_id == order_id,
                        stock_reservations.c.product_id == product_id,
                    )
                )
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise DependencyFailure(
                f"store read of reservation {order_id}/{product_id} failed: {exc}"
            ) from exc

        if row is None:
            return None
        return Reservation(
            order_id=row["order_id"],
            product_id=row["product_id"],
            quantity=row["quantity"],
            status=ReservationStatus(row["status"]),
        )

    # ── Write ────────────────────────────────────

    async def create(self, product: Product) -> Product:
        """
        DB にのみ保存する。キャッシュには次回の読み取りで載る
        (ロールバックされうる書き込みをキャッシュしない)。
        """
        values = product.model_dump(exclude={"id"}) if product.id is None else product.model_dump()
        try:
            async with self.session_factory() as session:
                result = await session.execute(insert(products).values(**values))
                await session.commit()
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"store insert of product failed: {exc}") from exc

        created = product.model_copy(update={"id": result.inserted_primary_key[0]})
        logger.info("Created product %s", created.id)
        return created

    async def update(
        self, product: Product, *, reservation: Reservation | None = None
    ) -> Product:
        """
        商品行を丸ごと書き込み、キャッシュを更新してから読み直して返す。

        WHERE version = :version で楽観的ロックをかける。
        一致しなければ何も書かずに StaleProductError。
        reservation を渡すと台帳も同じトランザクションで書く。

        コミット中・コミット後に中断 (タイムアウト等) された場合は
        キャッシュを捨てる。次の読み取りは DB から行われる。
        """
        key = product_key(product.id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(products)
                    .where(
                        products.c.id == product.id,
                        products.c.version == product.version,
                    )
                    .values(
                        name=product.name,
                        description=product.description,
                        price=product.price,
                        stock=product.stock,
                        version=product.version + 1,
                    )
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise StaleProductError(product.id, product.version)

                if reservation is not None:
                    await self._write_reservation(session, reservation)
                await session.commit()
        except IntegrityError as exc:
            # 台帳の主キー衝突 = 同じ注文を別の処理が先に書いた
            raise StaleProductError(product.id, product.version) from exc
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"store update of product {product.id} failed: {exc}") from exc
        except asyncio.CancelledError:
            # コミットされたかどうか分からない
            await self._discard(key)
            raise

        stored = product.model_copy(update={"version": product.version + 1})
        try:
            await self.cache.set(key, stored.model_dump_json())
        except BaseException:
            # DB はコミット済み。古いスナップショットを残さない
            await self._discard(key)
            raise

        current = await self.get_by_id(product.id)
        if current is None:
            raise DependencyFailure(f"product {product.id} vanished after update")
        return current

    async def record_reservation(self, reservation: Reservation) -> None:
        """在庫を動かさずに台帳だけ書く (引き当て拒否の記録)"""
        try:
            async with self.session_factory() as session:
                await self._write_reservation(session, reservation)
                await session.commit()
        except IntegrityError as exc:
            raise StaleProductError(reservation.product_id) from exc
        except SQLAlchemyError as exc:
            raise DependencyFailure(
                f"store write of reservation {reservation.order_id} failed: {exc}"
            ) from exc

    async def delete(self, product_id: int) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(delete(products).where(products.c.id == product_id))
                await session.commit()
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"store delete of product {product_id} failed: {exc}") from exc

        await self.cache.delete(product_key(product_id))
        logger.info("Deleted product %s", product_id)

    async def invalidate(self, product_id: int) -> None:
        await self.cache.delete(product_key(product_id))

    async def _discard(self, key: str) -> None:
        try:
            await self.cache.delete(key)
        except DependencyFailure as exc:
            logger.warning("Could not drop cache entry %s, it expires with its TTL: %s", key, exc)

    async def _write_reservation(self, session: AsyncSession, reservation: Reservation) -> None:
        now = datetime.now(timezone.utc)
        if reservation.status is ReservationStatus.RELEASED:
            # reserved → released の遷移だけを許す
            result = await session.execute(
                update(stock_reservations)
                .where(
                    stock_reservations.c.order_id == reservation.order_id,
                    stock_reservations.c.product_id == reservation.product_id,
                    stock_reservations.c.status == ReservationStatus.RESERVED.value,
                )
                .values(status=reservation.status.value, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise StaleProductError(reservation.product_id)
            return

        await session.execute(
            insert(stock_reservations).values(
                order_id=reservation.order_id,
                product_id=reservation.product_id,
                quantity=reservation.quantity,
                status=reservation.status.value,
                updated_at=now,
            )
        )
