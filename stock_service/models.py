"""
Stock Service — モデル定義

商品のスナップショット (DB 行 / キャッシュ値)、注文イベントのペイロード、
引き当て台帳のエントリ。
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class Product(BaseModel):
    """商品。stock は在庫数、version は楽観的ロック用のカウンタ"""
    id: int | None = None
    name: str
    description: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    # 負数はここでは弾かない (読み出し時に不変条件違反として検出する)
    stock: int = 0
    version: int = 0


class OrderLine(BaseModel):
    """注文明細"""
    product_id: int
    quantity: int
    markup: float = 0.0
    discount: float = 0.0
    final_price: float = 0.0


class Order(BaseModel):
    """order.created / order.cancelled イベントのペイロード"""
    id: int | str
    user_id: int | None = None
    product_requests: list[OrderLine]
    quantity: int = 0
    total_price: float = 0.0
    status: str = ""

    def quantities_by_product(self) -> dict[int, int]:
        """同じ商品の明細は数量を合算する"""
        totals: dict[int, int] = {}
        for line in self.product_requests:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        return totals


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    DECLINED = "declined"
    RELEASED = "released"


class Reservation(BaseModel):
    """引き当て台帳: (order_id, product_id) ごとに 1 行"""
    order_id: str
    product_id: int
    quantity: int
    status: ReservationStatus
