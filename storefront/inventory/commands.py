"""
Inventory Service — コマンドハンドラ (Write 側)

在庫数 (quantity) を変更できるのはこのモジュールだけ。
すべてのコマンドは呼び出し側のトランザクション内で実行され、
コミット/ロールバックは呼び出し側が行う。例外が出たら必ずロールバックすること。

変更のたびに sweets.version を 1 つ進め、同じバージョンで
イベントストアに記録する。
"""

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import event_store
from ..errors import InsufficientStock, InvalidInput, ItemNotFound
from ..money import to_cents
from . import queries
from .aggregate import Sweet
from .events import StockReserved, StockRestocked, SweetAdded, SweetRemoved, SweetUpdated

AGGREGATE_TYPE = "Sweet"

# update_sweet で変更を許可するフィールド → カラム
_UPDATABLE_COLUMNS = {
    "name": "name",
    "description": "description",
    "category": "category",
    "image_url": "image_url",
    "price": "price_cents",
    "quantity": "quantity",
}

# NULL にできないフィールド
_REQUIRED_FIELDS = {"name", "category", "price", "quantity"}


async def _record(session: AsyncSession, sweet: Sweet, event) -> None:
    await event_store.append_event(
        session,
        sweet.id,
        AGGREGATE_TYPE,
        type(event).__name__,
        event.model_dump(mode="json"),
        sweet.version,
    )


async def add_sweet(
    session: AsyncSession,
    name: str,
    category: str,
    price: Decimal,
    quantity: int,
    description: str | None = None,
    image_url: str | None = None,
) -> Sweet:
    if price < 0:
        raise InvalidInput("price must not be negative")
    if quantity < 0:
        raise InvalidInput("quantity must not be negative")

    sweet_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO sweets
                (id, name, description, category, image_url,
                 price_cents, quantity, version, created_at, updated_at)
            VALUES
                (:id, :name, :description, :category, :image_url,
                 :price_cents, :quantity, 1, :now, :now)
        """),
        {
            "id": sweet_id,
            "name": name,
            "description": description,
            "category": category,
            "image_url": image_url,
            "price_cents": to_cents(price),
            "quantity": quantity,
            "now": now,
        },
    )
    sweet = await queries.get_sweet(session, sweet_id)
    await _record(
        session,
        sweet,
        SweetAdded(
            sweet_id=sweet_id,
            name=name,
            category=category,
            price_cents=to_cents(price),
            quantity=quantity,
            timestamp=now,
        ),
    )
    return sweet


async def update_sweet(session: AsyncSession, sweet_id: str, changes: Mapping) -> Sweet:
    """商品情報を部分更新する。changes に含まれるフィールドだけを書き換える。"""
    unknown = set(changes) - set(_UPDATABLE_COLUMNS)
    if unknown:
        raise InvalidInput(f"Unknown fields: {', '.join(sorted(unknown))}")
    nulled = sorted(f for f in _REQUIRED_FIELDS & set(changes) if changes[f] is None)
    if nulled:
        raise InvalidInput(f"Fields cannot be null: {', '.join(nulled)}", item_id=sweet_id)
    if changes.get("quantity") is not None and changes["quantity"] < 0:
        raise InvalidInput("quantity must not be negative", item_id=sweet_id)
    if changes.get("price") is not None and changes["price"] < 0:
        raise InvalidInput("price must not be negative", item_id=sweet_id)

    now = datetime.now(timezone.utc)
    params: dict = {"id": sweet_id, "now": now}
    assignments = ["version = version + 1", "updated_at = :now"]
    for field, value in changes.items():
        column = _UPDATABLE_COLUMNS[field]
        params[column] = to_cents(value) if field == "price" else value
        assignments.append(f"{column} = :{column}")

    result = await session.execute(
        text(f"UPDATE sweets SET {', '.join(assignments)} WHERE id = :id"),
        params,
    )
    if result.rowcount != 1:
        raise ItemNotFound(sweet_id)

    sweet = await queries.get_sweet(session, sweet_id)
    recorded = {
        field: str(value) if isinstance(value, Decimal) else value
        for field, value in changes.items()
    }
    await _record(
        session,
        sweet,
        SweetUpdated(sweet_id=sweet_id, changes=recorded, timestamp=now),
    )
    return sweet


async def remove_sweet(session: AsyncSession, sweet_id: str) -> None:
    """
    商品を削除する。過去の注文明細は商品 ID と価格のスナップショットを
    持っているので影響を受けない。

    先にバージョンを進めて行ロックを取り、そのバージョンで SweetRemoved を記録する。
    """
    result = await session.execute(
        text("""
            UPDATE sweets
            SET version = version + 1, updated_at = :now
            WHERE id = :id
        """),
        {"now": datetime.now(timezone.utc), "id": sweet_id},
    )
    if result.rowcount != 1:
        raise ItemNotFound(sweet_id)

    sweet = await queries.get_sweet(session, sweet_id)
    await session.execute(text("DELETE FROM sweets WHERE id = :id"), {"id": sweet_id})
    await _record(
        session,
        sweet,
        SweetRemoved(sweet_id=sweet_id, timestamp=sweet.updated_at),
    )


async def restock(session: AsyncSession, sweet_id: str, quantity: int) -> Sweet:
    """在庫補充。現在の在庫数に加算する (上書きしない)。"""
    if quantity < 1:
        raise InvalidInput("restock quantity must be at least 1", item_id=sweet_id)

    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE sweets
            SET quantity = quantity + :qty, version = version + 1, updated_at = :now
            WHERE id = :id
        """),
        {"qty": quantity, "now": now, "id": sweet_id},
    )
    if result.rowcount != 1:
        raise ItemNotFound(sweet_id)

    sweet = await queries.get_sweet(session, sweet_id)
    await _record(
        session,
        sweet,
        StockRestocked(
            sweet_id=sweet_id,
            quantity=quantity,
            quantity_after=sweet.quantity,
            timestamp=now,
        ),
    )
    return sweet


async def reserve_stock(
    session: AsyncSession,
    order_id: str,
    quantities: Mapping[str, int],
) -> dict[str, Sweet]:
    """
    在庫引き当てコマンド (複数商品をまとめて)

    商品ごとに「在庫が足りる場合だけ減らす」条件付き UPDATE を発行する。
    判定と減算が 1 文で行われるので、事前に読んだ値ではなく
    書き込み時点の在庫数で再検証される (lost update が起きない)。

    - ロック順を揃えてデッドロックを避けるため、商品 ID の昇順で更新する
    - 1 件でも失敗したら ItemNotFound / InsufficientStock を送出する。
      それまでの減算は呼び出し側のロールバックで取り消される

    戻り値は引き当て後の商品 (引数と同じ並び順)。価格はこの時点の値。
    """
    now = datetime.now(timezone.utc)

    for sweet_id in sorted(quantities):
        qty = quantities[sweet_id]
        result = await session.execute(
            text("""
                UPDATE sweets
                SET quantity = quantity - :qty, version = version + 1, updated_at = :now
                WHERE id = :id AND quantity >= :qty
            """),
            {"qty": qty, "now": now, "id": sweet_id},
        )
        if result.rowcount != 1:
            current = await queries.get_sweet(session, sweet_id)
            if current is None:
                raise ItemNotFound(sweet_id)
            raise InsufficientStock(sweet_id, current.name, qty, current.quantity)

    sweets = await queries.get_sweets(session, list(quantities))
    reserved = {}
    for sweet_id, qty in quantities.items():
        sweet = sweets[sweet_id]
        await _record(
            session,
            sweet,
            StockReserved(
                sweet_id=sweet_id,
                order_id=order_id,
                quantity=qty,
                quantity_after=sweet.quantity,
                timestamp=now,
            ),
        )
        reserved[sweet_id] = sweet
    return reserved
