"""
Inventory Service — 商品 (Sweet)

在庫ストアが所有する商品レコード。読み出した瞬間のスナップショットで、
生成後は変更できない (frozen)。価格・在庫数の変更は commands.py を通す。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..db import as_utc
from ..money import from_cents


class Sweet(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    description: str | None = None
    category: str
    image_url: str | None = None
    price: Decimal = Field(ge=0, decimal_places=2)
    quantity: int = Field(ge=0)
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Sweet":
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            category=row.category,
            image_url=row.image_url,
            price=from_cents(row.price_cents),
            quantity=row.quantity,
            version=row.version,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
