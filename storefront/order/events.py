"""
Order Service — イベント定義

イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderLinePlaced(BaseModel):
    item_id: str
    quantity: int
    unit_price_cents: int


class OrderPlaced(BaseModel):
    """注文が確定された (在庫引き当てと同時に記録される)"""
    order_id: str
    buyer_id: str
    total_cents: int
    status: str
    lines: list[OrderLinePlaced]
    timestamp: datetime
