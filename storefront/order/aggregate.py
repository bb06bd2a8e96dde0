"""
Order Service — 注文 (Order) と注文明細 (OrderLine)

注文は作成時に明細と一緒に一度だけ組み立てられ、その後は変更されない。
pydantic の frozen モデルにしてセッターを持たせない。

不変条件 (生成時に検証):
  - 明細は 1 行以上
  - total == sum(quantity * unit_price)
  - 同じ商品の明細は 1 行だけ
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    # PENDING 以降の遷移 (発送など) はこのサービスの範囲外
    PENDING = "PENDING"


class CartLine(BaseModel):
    """呼び出し側から渡されるカートの 1 行。永続化はしない。"""

    model_config = ConfigDict(frozen=True)

    item_id: str
    quantity: int


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    item_id: str
    name: str
    quantity: int = Field(gt=0)
    # 注文時点の価格スナップショット。後から商品価格が変わっても変わらない
    unit_price: Decimal = Field(ge=0, decimal_places=2)

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    buyer_id: str
    total: Decimal = Field(ge=0, decimal_places=2)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    lines: tuple[OrderLine, ...]

    @model_validator(mode="after")
    def _check_invariants(self) -> "Order":
        if not self.lines:
            raise ValueError("an order must have at least one line")
        item_ids = [line.item_id for line in self.lines]
        if len(set(item_ids)) != len(item_ids):
            raise ValueError("an order must not contain the same item twice")
        expected = sum((line.subtotal for line in self.lines), Decimal("0"))
        if self.total != expected:
            raise ValueError(f"total {self.total} does not match lines ({expected})")
        return self
