"""
Order Service — コマンドハンドラ (Write 側)

注文台帳は追記のみ。注文と明細は 1 回の書き込みで作成され、
更新・削除のコマンドは存在しない。

create_order は業務ルールを検証しない (検証はオーケストレーターの責務)。
呼び出し側のトランザクション内で実行され、注文・明細・OrderPlaced イベントは
コミット時に同時に見えるようになる。
"""

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import event_store
from ..money import to_cents
from .aggregate import Order, OrderLine, OrderStatus
from .events import OrderLinePlaced, OrderPlaced


async def create_order(
    session: AsyncSession,
    buyer_id: str,
    total: Decimal,
    lines: Sequence[OrderLine],
    order_id: str | None = None,
) -> Order:
    """
    注文作成コマンド

    1. Order を組み立てる (不変条件はここで検証される)
    2. orders / order_lines に INSERT
    3. OrderPlaced イベントをイベントストアに追記
    """
    order = Order(
        id=order_id or str(uuid.uuid4()),
        buyer_id=buyer_id,
        total=total,
        status=OrderStatus.PENDING,
        created_at=datetime.now(timezone.utc),
        lines=tuple(lines),
    )

    await session.execute(
        text("""
            INSERT INTO orders (id, buyer_id, total_cents, status, created_at)
            VALUES (:id, :buyer_id, :total_cents, :status, :created_at)
        """),
        {
            "id": order.id,
            "buyer_id": order.buyer_id,
            "total_cents": to_cents(order.total),
            "status": order.status.value,
            "created_at": order.created_at,
        },
    )
    await session.execute(
        text("""
            INSERT INTO order_lines
                (order_id, position, item_id, name, quantity, unit_price_cents)
            VALUES
                (:order_id, :position, :item_id, :name, :quantity, :unit_price_cents)
        """),
        [
            {
                "order_id": order.id,
                "position": position,
                "item_id": line.item_id,
                "name": line.name,
                "quantity": line.quantity,
                "unit_price_cents": to_cents(line.unit_price),
            }
            for position, line in enumerate(order.lines)
        ],
    )

    event = OrderPlaced(
        order_id=order.id,
        buyer_id=order.buyer_id,
        total_cents=to_cents(order.total),
        status=order.status.value,
        lines=[
            OrderLinePlaced(
                item_id=line.item_id,
                quantity=line.quantity,
                unit_price_cents=to_cents(line.unit_price),
            )
            for line in order.lines
        ],
        timestamp=order.created_at,
    )
    await event_store.append_event(
        session, order.id, "Order", "OrderPlaced", event.model_dump(mode="json"), 1
    )
    return order
