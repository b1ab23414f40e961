"""
Stock Service — 例外

在庫不足は例外ではない。reserve() が False を返す。
"""


class InventoryError(Exception):
    """在庫ドメインの例外の基底クラス"""


class ProductNotFound(InventoryError):
    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InvalidQuantity(InventoryError):
    def __init__(self, quantity: int) -> None:
        super().__init__(f"Quantity must be positive, got {quantity}")
        self.quantity = quantity


class DependencyFailure(InventoryError):
    """キャッシュまたは DB の呼び出しが失敗した"""


class StockInvariantViolation(InventoryError):
    """永続化された在庫が負数だった (どこかで整合性が壊れている)"""

    def __init__(self, product_id: int, stock: int) -> None:
        super().__init__(f"Product {product_id} has negative stock ({stock})")
        self.product_id = product_id
        self.stock = stock


class StaleProductError(InventoryError):
    """楽観的ロックの競合: 読み込んだ version が既に古い"""

    def __init__(self, product_id: int, version: int | None = None) -> None:
        if version is None:
            super().__init__(f"Product {product_id} reservation ledger changed concurrently")
        else:
            super().__init__(f"Product {product_id} changed since version {version}")
        self.product_id = product_id
        self.version = version


class ConcurrentModificationError(InventoryError):
    """リトライ上限まで競合が解消しなかった"""

    def __init__(self, product_id: int, attempts: int) -> None:
        super().__init__(
            f"Product {product_id} kept changing; gave up after {attempts} attempts"
        )
        self.product_id = product_id
        self.attempts = attempts
