"""
Order Service — クエリハンドラ (Read 側)

注文は明細と一緒に作成されるので、読み出し時に明細が欠けていることはない。
"""

from collections import defaultdict

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_utc
from ..money import from_cents
from .aggregate import Order, OrderLine


async def _load_lines(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderLine]]:
    result = await session.execute(
        text("""
            SELECT order_id, item_id, name, quantity, unit_price_cents
            FROM order_lines
            WHERE order_id IN :ids
            ORDER BY order_id, position
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": order_ids},
    )
    lines: dict[str, list[OrderLine]] = defaultdict(list)
    for row in result.fetchall():
        lines[row.order_id].append(
            OrderLine(
                item_id=row.item_id,
                name=row.name,
                quantity=row.quantity,
                unit_price=from_cents(row.unit_price_cents),
            )
        )
    return lines


async def _hydrate(session: AsyncSession, rows) -> list[Order]:
    if not rows:
        return []
    lines = await _load_lines(session, [row.id for row in rows])
    return [
        Order(
            id=row.id,
            buyer_id=row.buyer_id,
            total=from_cents(row.total_cents),
            status=row.status,
            created_at=as_utc(row.created_at),
            lines=tuple(lines[row.id]),
        )
        for row in rows
    ]


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("""
            SELECT id, buyer_id, total_cents, status, created_at
            FROM orders
            WHERE id = :id
        """).columns(created_at=DateTime(timezone=True)),
        {"id": order_id},
    )
    orders = await _hydrate(session, result.fetchall())
    return orders[0] if orders else None


async def list_orders(session: AsyncSession, buyer_id: str) -> list[Order]:
    """購入者の注文一覧 (新しい順)。"""
    result = await session.execute(
        text("""
            SELECT id, buyer_id, total_cents, status, created_at
            FROM orders
            WHERE buyer_id = :buyer_id
            ORDER BY created_at DESC, id
        """).columns(created_at=DateTime(timezone=True)),
        {"buyer_id": buyer_id},
    )
    return await _hydrate(session, result.fetchall())
