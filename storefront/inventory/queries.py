"""
Inventory Service — クエリハンドラ (Read 側)

check_availability は注文確定前の読み取り専用チェック。
何度呼んでも状態は変わらない。ここでの結果は「読んだ瞬間」の値にすぎず、
実際の引き当ては commands.reserve_stock が書き込み時に再検証する。
"""

from collections.abc import Mapping

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, ItemNotFound
from .aggregate import Sweet

_SELECT_SWEETS = """
    SELECT id, name, description, category, image_url,
           price_cents, quantity, version, created_at, updated_at
    FROM sweets
"""


def _select(where: str = "", order_by: str = "", *binds):
    stmt = text(f"{_SELECT_SWEETS} {where} {order_by}")
    if binds:
        stmt = stmt.bindparams(*binds)
    return stmt.columns(
        created_at=DateTime(timezone=True),
        updated_at=DateTime(timezone=True),
    )


async def get_sweet(session: AsyncSession, sweet_id: str) -> Sweet | None:
    result = await session.execute(_select("WHERE id = :id"), {"id": sweet_id})
    row = result.fetchone()
    if not row:
        return None
    return Sweet.from_row(row)


async def get_sweets(session: AsyncSession, sweet_ids: list[str]) -> dict[str, Sweet]:
    """存在する商品だけを id → Sweet で返す。"""
    if not sweet_ids:
        return {}
    stmt = _select("WHERE id IN :ids", "", bindparam("ids", expanding=True))
    result = await session.execute(stmt, {"ids": list(sweet_ids)})
    return {row.id: Sweet.from_row(row) for row in result.fetchall()}


async def list_sweets(session: AsyncSession) -> list[Sweet]:
    result = await session.execute(_select(order_by="ORDER BY created_at DESC, id"))
    return [Sweet.from_row(row) for row in result.fetchall()]


async def check_availability(
    session: AsyncSession,
    quantities: Mapping[str, int],
) -> dict[str, Sweet]:
    """
    在庫確認 (読み取りのみ)

    1. すべての商品が存在するか確認 → なければ ItemNotFound
    2. すべての行で要求数 <= 在庫数か確認 → 不足なら InsufficientStock

    どちらもカートの並び順で最初に見つかった商品を報告する。
    """
    sweets = await get_sweets(session, list(quantities))

    for sweet_id in quantities:
        if sweet_id not in sweets:
            raise ItemNotFound(sweet_id)

    for sweet_id, requested in quantities.items():
        sweet = sweets[sweet_id]
        if requested > sweet.quantity:
            raise InsufficientStock(sweet_id, sweet.name, requested, sweet.quantity)

    return sweets
