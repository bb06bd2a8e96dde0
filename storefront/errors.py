"""
Storefront — エラー定義

すべてのドメインエラーは StorefrontError を継承し、
機械可読な kind・人間向けの message・該当する商品 ID を持つ。
HTTP 層はこの情報だけでレスポンスを組み立てる。
"""

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    ITEM_NOT_FOUND = "ItemNotFound"
    INSUFFICIENT_STOCK = "InsufficientStock"
    CONFLICT = "Conflict"
    UNAVAILABLE = "Unavailable"
    TIMEOUT = "Timeout"
    UNAUTHENTICATED = "Unauthenticated"
    FORBIDDEN = "Forbidden"
    ORDER_NOT_FOUND = "OrderNotFound"


class StorefrontError(Exception):
    kind: ErrorKind
    status_code: int = 500

    def __init__(self, message: str, item_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.item_id = item_id

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "itemId": self.item_id}


class InvalidInput(StorefrontError):
    """カートが空、数量が 0 以下など。ストアには一切アクセスしない。"""

    kind = ErrorKind.INVALID_INPUT
    status_code = 400


class ItemNotFound(StorefrontError):
    kind = ErrorKind.ITEM_NOT_FOUND
    status_code = 404

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Sweet with id {item_id} not found", item_id=item_id)


class InsufficientStock(StorefrontError):
    kind = ErrorKind.INSUFFICIENT_STOCK
    status_code = 409

    def __init__(self, item_id: str, name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {name}: requested={requested}, available={available}",
            item_id=item_id,
        )
        self.requested = requested
        self.available = available


class OrderNotFound(StorefrontError):
    kind = ErrorKind.ORDER_NOT_FOUND
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order with id {order_id} not found")
        self.order_id = order_id


class Conflict(StorefrontError):
    """コミット時の競合がリトライ上限を超えた。呼び出し側は再試行してよい。"""

    kind = ErrorKind.CONFLICT
    status_code = 409


class Unavailable(StorefrontError):
    kind = ErrorKind.UNAVAILABLE
    status_code = 503


class PlacementTimeout(StorefrontError):
    kind = ErrorKind.TIMEOUT
    status_code = 504


class Unauthenticated(StorefrontError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401


class Forbidden(StorefrontError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
