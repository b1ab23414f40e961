"""
Stock Service — テーブル定義

products: 在庫の正 (source of truth)。キャッシュと食い違ったら常にこちらが勝つ。
stock_reservations: 注文単位の引き当て台帳。在庫の更新と同じトランザクションで書く。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("price", Numeric(12, 2), nullable=False, default=0),
    Column("stock", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("order_id", String(64), nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("order_id", "product_id"),
)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
